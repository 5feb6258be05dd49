"""Terminal surface: a CLI chat agent running in a tmux pane."""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from chat_relay.clients.tmux import tmux_client
from chat_relay.constants import TMUX_HISTORY_LINES
from chat_relay.errors import SurfaceNotFound
from chat_relay.models.agent import Observation
from chat_relay.surfaces.base import BaseSurface
from chat_relay.utils.probes import PatternProbe, first_match, matching_names

logger = logging.getLogger(__name__)

TMUX_SCHEME = "tmux:"

# Regex patterns for terminal output analysis
ANSI_CODE_PATTERN = r"\x1b\[[0-?]*[ -/]*[@-~]"
OSC_PATTERN = r"\x1b\][^\x07]*(?:\x07|\x1b\\)"

# Idle prompts that mean the agent accepts input, checked in priority order
INPUT_PROBES = [
    PatternProbe("claude_prompt", r"^[>❯]\s"),
    PatternProbe("codex_prompt", r"^\s*(?:❯|›|codex>)\s*"),
    PatternProbe("codex_hint", r"^\s*›\s+.*for shortcuts.*$"),
    PatternProbe("repl_prompt", r"^\s*(?:>>>|>)\s*$"),
]

# In-progress indicators, checked against the last few non-blank lines only
LOADING_PROBES = [
    PatternProbe("claude_spinner", r"[✶✢✽✻·✳].*….*\(.*\)"),
    PatternProbe("esc_to_interrupt", r"esc to interrupt", re.IGNORECASE),
    PatternProbe("codex_working", r"^\s*[•◦]?\s*(?:Working|Thinking)\b.*\(\d+s\b"),
]
LOADING_TAIL_LINES = 5

CLAUDE_REPLY_PATTERN = r"⏺\s+"
CODEX_REPLY_PATTERN = r"^\s*(?:(?:assistant|codex|agent)\s*:|•\s+)"
USER_PREFIX_PATTERN = r"^\s*(?:You\b|›\s+\S)"
PROMPT_LINE_PATTERN = r"^\s*(?:>>>|codex>|[>❯›])\s*"
SEPARATOR_PATTERN = r"^\s*[─━]{8,}"
CONTEXT_FOOTER_PATTERN = r"^\s*\d+%\s+context left\s*$"


def parse_tmux_address(address: str) -> Tuple[str, str]:
    """Split ``tmux:session:window`` (or ``session:window``) into its parts."""
    target = address[len(TMUX_SCHEME) :] if address.startswith(TMUX_SCHEME) else address
    session_name, sep, window_name = target.partition(":")
    if not sep or not session_name or not window_name:
        raise ValueError(f"Invalid tmux address '{address}', expected session:window")
    return session_name, window_name


def clean_terminal_output(output: str) -> str:
    """Strip control sequences and normalize line endings for parsing."""
    output = re.sub(OSC_PATTERN, "", output)
    output = re.sub(ANSI_CODE_PATTERN, "", output)
    return output.replace("\r", "\n")


def _collect_until_boundary(lines: List[str], boundaries: List[str]) -> Optional[str]:
    message_lines = []
    for idx, line in enumerate(lines):
        # Boundaries only count once assistant content has started
        if idx > 0 and any(re.match(pattern, line) for pattern in boundaries):
            break
        message_lines.append(line.rstrip())
    message = "\n".join(message_lines).strip()
    return message or None


def extract_claude_reply(clean_output: str) -> Optional[str]:
    """Text after the last ⏺ marker, up to the next prompt or separator."""
    matches = list(re.finditer(CLAUDE_REPLY_PATTERN, clean_output))
    if not matches:
        return None
    remaining = clean_output[matches[-1].end() :].split("\n")
    return _collect_until_boundary(remaining, [r">\s", SEPARATOR_PATTERN, PROMPT_LINE_PATTERN])


def extract_codex_reply(clean_output: str) -> Optional[str]:
    """Text after the last assistant marker (legacy ``assistant:`` or v0.104+ ``•``)."""
    matches = list(re.finditer(CODEX_REPLY_PATTERN, clean_output, re.IGNORECASE | re.MULTILINE))
    if not matches:
        return None
    remaining = clean_output[matches[-1].end() :].split("\n")
    return _collect_until_boundary(
        remaining, [USER_PREFIX_PATTERN, PROMPT_LINE_PATTERN, CONTEXT_FOOTER_PATTERN]
    )


def extract_block_after_prompt(clean_output: str) -> Optional[str]:
    """Fallback: the output block following the last prompt line that carried input."""
    lines = clean_output.split("\n")
    last_input_idx = None
    for idx, line in enumerate(lines):
        match = re.match(PROMPT_LINE_PATTERN, line)
        if match and line[match.end() :].strip():
            last_input_idx = idx
    if last_input_idx is None:
        return None
    block = []
    for line in lines[last_input_idx + 1 :]:
        if re.match(PROMPT_LINE_PATTERN, line):
            break
        block.append(line.rstrip())
    message = "\n".join(block).strip()
    return message or None


# Reply candidates, checked in priority order
REPLY_PROBES = [extract_claude_reply, extract_codex_reply, extract_block_after_prompt]


class TerminalSurface(BaseSurface):
    """Drives a chat CLI in a tmux window through ``tmux_client``."""

    def __init__(self, address: str, history_lines: int = TMUX_HISTORY_LINES):
        super().__init__(address)
        self.session_name, self.window_name = parse_tmux_address(address)
        self.history_lines = history_lines

    async def _history(self) -> str:
        output = await asyncio.to_thread(
            tmux_client.get_history, self.session_name, self.window_name, self.history_lines
        )
        return clean_terminal_output(output or "")

    async def exists(self) -> bool:
        return await asyncio.to_thread(
            tmux_client.window_exists, self.session_name, self.window_name
        )

    async def locate_input(self) -> str:
        if not await self.exists():
            raise SurfaceNotFound(f"Terminal {self.address} not found")

        clean_output = await self._history()
        tail = _tail(clean_output, LOADING_TAIL_LINES)
        if first_match([probe.search for probe in LOADING_PROBES], tail):
            raise SurfaceNotFound(f"Terminal {self.address} is still busy")

        # Only a prompt on the last non-blank line means the input is ready
        last_line = _tail(clean_output, 1)
        for probe in INPUT_PROBES:
            if probe.search(last_line):
                logger.debug(f"Input located on {self.address} via {probe.name}")
                return probe.name
        raise SurfaceNotFound(f"No input prompt found on terminal {self.address}")

    async def write_input(self, text: str) -> None:
        await asyncio.to_thread(
            tmux_client.send_keys, self.session_name, self.window_name, text, False
        )

    async def submit(self) -> None:
        await asyncio.to_thread(tmux_client.send_enter, self.session_name, self.window_name)

    async def observe(self) -> Observation:
        clean_output = await self._history()
        tail = _tail(clean_output, LOADING_TAIL_LINES)
        loading = bool(first_match([probe.search for probe in LOADING_PROBES], tail))
        return Observation(text=first_match(REPLY_PROBES, clean_output), loading=loading)

    async def debug_info(self) -> Dict[str, Any]:
        clean_output = await self._history()
        info = await super().debug_info()
        info["input_probes"] = matching_names(INPUT_PROBES, _tail(clean_output, 1))
        info["loading_probes"] = matching_names(
            LOADING_PROBES, _tail(clean_output, LOADING_TAIL_LINES)
        )
        return info

    async def close(self, remove_endpoint: bool = False) -> None:
        if remove_endpoint:
            await asyncio.to_thread(tmux_client.kill_window, self.session_name, self.window_name)


def _tail(text: str, count: int) -> str:
    lines = [line for line in text.split("\n") if line.strip()]
    return "\n".join(lines[-count:])
