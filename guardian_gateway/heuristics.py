"""Heuristic risk scoring and intrinsic-evil detection for tool calls.

Two independent checks:

* ``check_intrinsic_evil`` matches destructive shell signatures and harmful
  content in generated image prompts. A match is an unconditional BLOCK.
* ``assess_clarity`` / ``assess_stakes`` start at 1 and accumulate additive
  penalties, clamped at 10 per axis. Their product (1..100) is compared with a
  single threshold by the evaluator.

This is NOT intent understanding. It is a tripwire: keyword and regex
signals only. Penalties are additive and never negative, so adding a risk
indicator to a request can never lower its score.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Pattern, Tuple

MAX_AXIS = 10

# Tools that affect system infrastructure
INFRASTRUCTURE_TOOLS = frozenset({"gateway", "exec", "Write", "Edit"})

# Tools with external effects
EXTERNAL_EFFECT_TOOLS = frozenset({"message", "browser", "cron", "nodes", "tts"})

# Host agent process names; stopping them disables the gate itself.
HOST_AGENT_NAMES = ("openclaw",)

CONFIG_ACTIONS = ("config.apply", "config.patch")
MODEL_MARKERS = ("model", "defaultModel")
PLUGIN_MARKERS = ("plugin",)
SCHEDULE_MUTATIONS = ("add", "update")

IMAGE_GEN_MARKERS = (
    "generate_image.py",
    "nano-banana",
    "openai-image",
    "dall-e",
    "midjourney",
    "stable-diffusion",
    "image-gen",
)


@dataclass(frozen=True)
class ContentPattern:
    pattern: Pattern[str]
    label: str


# Impermissible regardless of context (block, no escalation path).
HARMFUL_CONTENT_PATTERNS: Tuple[ContentPattern, ...] = (
    ContentPattern(
        re.compile(
            r"\b(child|children|minor|underage|kid|kids|teen|teens)\b.{0,20}(nude|naked|sexual|erotic)"
            r"|\b(nude|naked|sexual|erotic)\b.{0,20}\b(child|children|minor|underage|kid|kids|teen|teens)\b",
            re.IGNORECASE,
        ),
        "child exploitation",
    ),
    ContentPattern(
        re.compile(r"\b(nude|naked|porn|pornograph\w*|nsfw|xxx|erotic|sexual(?:ly)?|genitals?)\b", re.IGNORECASE),
        "pornography",
    ),
    ContentPattern(
        re.compile(r"\b(gore|gory|dismember\w*|mutilat\w*|torture\w*|brutal.{0,10}kill\w*)\b", re.IGNORECASE),
        "extreme violence",
    ),
    ContentPattern(
        re.compile(r"\b(terrorist|terrorism|bomb.{0,10}(make|making|build|building|instruct\w*))\b", re.IGNORECASE),
        "terrorism",
    ),
    ContentPattern(
        re.compile(r"\b(deepfake|fake.{0,10}(id|passport|document|evidence))\b", re.IGNORECASE),
        "fraud/deception",
    ),
)

# Concerning but context-dependent (never blocks; raises clarity/stakes).
CONCERNING_CONTENT_PATTERNS: Tuple[ContentPattern, ...] = (
    ContentPattern(re.compile(r"\b(weapons?|guns?|rifles?|pistols?|knife|knives|swords?)\b", re.IGNORECASE), "weapons depicted"),
    ContentPattern(re.compile(r"\b(blood|bloody|bleeding|wounds?)\b", re.IGNORECASE), "potentially graphic content"),
    ContentPattern(re.compile(r"\b(drugs?|cocaine|heroin|meth)\b", re.IGNORECASE), "drug-related content"),
)

_RM_ROOT = re.compile(r"(?:^|[^\w.-])(?:/[\w./-]*/)?rm\s+((?:-{1,2}[\w-]+\s+)*)(?:--\s+)?[\"']?/\*?[\"']?(?=$|[\s;&|)])")
_FORK_BOMB = re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")
_MKFS = re.compile(r"(?:^|[^\w])mkfs(\.[\w]+)?\b")
_RAW_DEVICE = r"/dev/(?:sd[a-z]|hd[a-z]|vd[a-z]|xvd[a-z]|nvme\d|mmcblk\d|disk\d)"
_REDIRECT_TO_DEVICE = re.compile(r">\s*" + _RAW_DEVICE)
_DD_TO_DEVICE = re.compile(r"(?:^|[^\w])dd\s+[^;|&]*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)")

_PROMPT_QUOTED = re.compile(r"(?:--prompt|-p)\s+[\"']([^\"']+)[\"']", re.IGNORECASE)
_PROMPT_UNQUOTED = re.compile(r"(?:--prompt|-p)\s+([^-][^\s]*(?:\s+[^-][^\s]*)*)", re.IGNORECASE)

_RM = re.compile(r"(?:^|[^\w-])rm\s")
_RM_FLAGS = re.compile(r"(?:^|[^\w-])rm((?:\s+-[\w=-]*)*)(?=\s|$)")
_NOT_SINGLE_COMMAND = ("|", ";", "&", "`", "$(", "#", "\n", ">", "<")
_ENV_ASSIGNMENT = re.compile(r"^[a-z_][a-z0-9_]*=")
_INTERPRETERS = frozenset({"node", "bash", "sh", "zsh", "deno", "bun", "npx", "uv", "uvx"})
_SUDO = re.compile(r"\bsudo\b")
_KILL = re.compile(r"\b(?:kill|pkill|killall)\b")
_POWER = re.compile(r"\b(?:shutdown|reboot)\b")
_STOP = re.compile(r"\b(?:stop|kill)\b")
_COMPOUND = ("|", ";", "&&")


def normalize_command(text: str) -> str:
    """Normalize a shell command for matching.

    NFKC folds look-alike forms, format characters (zero-width space/joiners)
    are dropped and whitespace is collapsed.
    """
    if not text:
        return ""
    t = unicodedata.normalize("NFKC", str(text))
    t = "".join(ch for ch in t if unicodedata.category(ch) != "Cf")
    return re.sub(r"\s+", " ", t).strip()


def mentions_image_generator(cmd: str) -> bool:
    lower = cmd.lower()
    return any(marker in lower for marker in IMAGE_GEN_MARKERS)


def _is_generator(word: str) -> bool:
    base = word.strip("\"'").rsplit("/", 1)[-1]
    return any(marker in base for marker in IMAGE_GEN_MARKERS)


def is_image_generation_command(cmd: str) -> bool:
    """True when the whole command is one invocation of an image generator.

    The generator must be the program itself or the script handed to an
    interpreter. Compound commands, substitutions and comments never qualify,
    so a generator name cannot exempt other work from shell penalties.
    """
    lower = cmd.lower()
    if any(sep in lower for sep in _NOT_SINGLE_COMMAND):
        return False
    words = [w for w in lower.split() if not _ENV_ASSIGNMENT.match(w)]
    if not words:
        return False
    if _is_generator(words[0]):
        return True
    program = words[0].rsplit("/", 1)[-1]
    if program not in _INTERPRETERS and not program.startswith("python"):
        return False
    for word in words[1:]:
        if word.startswith("-") or word == "run":
            continue
        return _is_generator(word)
    return False


def _rm_is_interactive(flags: str) -> bool:
    for flag in flags.split():
        if flag == "--interactive" or flag.startswith("--interactive="):
            return True
        if not flag.startswith("--") and "i" in flag[1:]:
            return True
    return False


def has_non_interactive_rm(cmd: str) -> bool:
    """True if any rm invocation in the command lacks its own -i/--interactive flag."""
    return any(not _rm_is_interactive(m.group(1)) for m in _RM_FLAGS.finditer(cmd))


def extract_image_prompt(cmd: str) -> Optional[str]:
    """Return the --prompt/-p text of an image generation command."""
    m = _PROMPT_QUOTED.search(cmd)
    if m:
        return m.group(1)
    m = _PROMPT_UNQUOTED.search(cmd)
    if m:
        return m.group(1).strip()
    return None


@dataclass(frozen=True)
class ContentFinding:
    block: bool
    reason: str


def check_content(text: str) -> Optional[ContentFinding]:
    """Classify generated text: harmful (block), concerning, or nothing."""
    if not text:
        return None
    for item in HARMFUL_CONTENT_PATTERNS:
        if item.pattern.search(text):
            return ContentFinding(True, f"Image request contains {item.label} (violation of dignity)")
    for item in CONCERNING_CONTENT_PATTERNS:
        if item.pattern.search(text):
            return ContentFinding(False, f"Image request may contain {item.label}")
    return None


def _is_recursive(flags: str) -> bool:
    for flag in flags.split():
        if flag.startswith("--"):
            if flag == "--recursive":
                return True
        elif "r" in flag or "R" in flag:
            return True
    return False


def detect_destructive_command(cmd: str) -> Optional[str]:
    """Match catastrophically destructive shell signatures."""
    t = normalize_command(cmd).lower()
    if not t:
        return None
    for m in _RM_ROOT.finditer(t):
        if _is_recursive(m.group(1)):
            return "Command would destroy root filesystem"
    if _FORK_BOMB.search(t):
        return "Fork bomb detected"
    if _MKFS.search(t) and "--dry-run" not in t:
        return "Filesystem format command detected"
    if _REDIRECT_TO_DEVICE.search(t) or _DD_TO_DEVICE.search(t):
        return "Raw disk write detected"
    return None


@dataclass
class _Signals:
    """Parameter facts shared by the detector, both scorers and the reason builder."""

    tool_name: str
    command: str = ""
    image_generation: bool = False
    content: Optional[ContentFinding] = None
    action: str = ""
    raw: str = ""
    path: str = ""

    @property
    def concerning_content(self) -> bool:
        return self.content is not None and not self.content.block


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _inspect(tool_name: str, params: Mapping[str, Any]) -> _Signals:
    s = _Signals(tool_name=tool_name)
    s.action = _text(params.get("action"))
    s.raw = _text(params.get("raw"))
    s.path = _text(params.get("path") or params.get("file_path"))
    if tool_name == "exec":
        s.command = normalize_command(_text(params.get("command")))
        s.image_generation = is_image_generation_command(s.command)
        if s.image_generation or mentions_image_generator(s.command):
            prompt = extract_image_prompt(s.command)
            if prompt:
                s.content = check_content(prompt)
    return s


def check_intrinsic_evil(tool_name: str, params: Mapping[str, Any]) -> Optional[str]:
    """Return a block reason for an impermissible action, else None."""
    params = params or {}
    if tool_name != "exec":
        return None
    reason = detect_destructive_command(_text(params.get("command")))
    if reason:
        return reason
    s = _inspect(tool_name, params)
    if s.content is not None and s.content.block:
        return s.content.reason
    return None


def _clarity(s: _Signals, params: Mapping[str, Any]) -> int:
    clarity = 1
    tool = s.tool_name

    if tool in INFRASTRUCTURE_TOOLS:
        if s.image_generation:
            # Image generation skips the infrastructure penalty; only its
            # prompt content can raise ambiguity.
            if s.concerning_content:
                clarity += 3
        else:
            clarity += 3

    if tool in EXTERNAL_EFFECT_TOOLS:
        clarity += 2

    if tool == "gateway":
        if s.action in CONFIG_ACTIONS:
            clarity += 3
            if any(marker in s.raw for marker in MODEL_MARKERS):
                clarity += 2
        if s.action == "update.run":
            clarity += 2
        if s.action == "restart":
            clarity += 1

    if tool == "exec" and not s.image_generation:
        cmd = s.command
        if _SUDO.search(cmd):
            clarity += 2
        if _RM.search(cmd):
            clarity += 2
        if any(sep in cmd for sep in _COMPOUND):
            clarity += 1

    if tool == "message":
        clarity += 1
        targets = params.get("targets")
        if isinstance(targets, (list, tuple)) and len(targets) > 1:
            clarity += 2

    if tool == "cron" and s.action in SCHEDULE_MUTATIONS:
        clarity += 2

    return min(clarity, MAX_AXIS)


def _stakes(s: _Signals) -> int:
    stakes = 1
    tool = s.tool_name

    if tool in INFRASTRUCTURE_TOOLS:
        if s.image_generation:
            if s.concerning_content:
                stakes += 2
        else:
            stakes += 3

    if tool == "gateway":
        if s.action in CONFIG_ACTIONS:
            stakes += 2
            if any(marker in s.raw for marker in MODEL_MARKERS):
                # Model changes can lock the agent out.
                stakes += 3
            if any(marker in s.raw for marker in PLUGIN_MARKERS):
                stakes += 2
        if s.action == "update.run":
            stakes += 3
        if s.action == "restart":
            stakes += 1

    if tool == "exec" and not s.image_generation:
        cmd = s.command
        if has_non_interactive_rm(cmd):
            stakes += 3
        if _KILL.search(cmd):
            stakes += 2
        if _POWER.search(cmd):
            stakes += 5
        if _SUDO.search(cmd):
            stakes += 2
        lower = cmd.lower()
        if any(name in lower for name in HOST_AGENT_NAMES) and _STOP.search(lower):
            # Self-disabling
            stakes += 4

    if tool in ("Write", "Edit"):
        path = s.path.lower()
        if any(name in path for name in HOST_AGENT_NAMES) and "config" in path:
            stakes += 3
        if ".env" in path or "secret" in path or "credential" in path:
            stakes += 2

    if tool == "message":
        stakes += 2

    if tool == "cron" and s.action in SCHEDULE_MUTATIONS:
        stakes += 2

    return min(stakes, MAX_AXIS)


def assess_clarity(tool_name: str, params: Mapping[str, Any]) -> int:
    """Moral clarity of the action (1 = obvious, 10 = ambiguous)."""
    params = params or {}
    return _clarity(_inspect(tool_name, params), params)


def assess_stakes(tool_name: str, params: Mapping[str, Any]) -> int:
    """Stakes of the action (1 = trivial, 10 = irreversible)."""
    return _stakes(_inspect(tool_name, params or {}))


@dataclass(frozen=True)
class RiskAssessment:
    clarity: int
    stakes: int
    concerns: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def score(self) -> int:
        return self.clarity * self.stakes


def _concerns(s: _Signals, params: Mapping[str, Any]) -> List[str]:
    concerns: List[str] = []
    if s.tool_name == "gateway":
        if "config" in s.action:
            concerns.append("This modifies host agent configuration")
        if s.action == "update.run":
            concerns.append("This updates host agent software")
        if s.action == "restart":
            concerns.append("This will restart the host agent")

    if s.tool_name == "exec":
        if s.image_generation:
            if s.concerning_content:
                concerns.append(s.content.reason)
            concerns.append("Image generation")
        else:
            cmd = s.command
            concerns.append(f"Command: {cmd[:80]}{'...' if len(cmd) > 80 else ''}")

    if s.tool_name == "message":
        to = params.get("to") or params.get("target") or params.get("targets")
        if to:
            concerns.append(f"Recipient: {str(to)[:50]}")
    return concerns


def assess_risk(tool_name: str, params: Mapping[str, Any]) -> RiskAssessment:
    params = params or {}
    s = _inspect(tool_name, params)
    return RiskAssessment(
        clarity=_clarity(s, params),
        stakes=_stakes(s),
        concerns=tuple(_concerns(s, params)),
    )


def build_escalation_reason(tool_name: str, risk: RiskAssessment) -> str:
    """Human-readable escalation reason: tool, score, then specific concerns."""
    parts = [
        f"Action: {tool_name}",
        f"Risk score: {risk.score} (clarity={risk.clarity}, stakes={risk.stakes})",
    ]
    parts.extend(risk.concerns)
    return " | ".join(parts)
