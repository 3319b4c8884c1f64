"""Status classification.

Two interchangeable implementations of one interface: an ordered list of
regex/timing rules over the scrollback tail, and a mapping over the
structured NDJSON events some agent CLIs can print.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern

from .agentspec import AgentCatalog
from .config import TimingConfig
from .session import Session, SessionStatus

logger = logging.getLogger("agent_shells.classifier")

TAIL_SIZE = 3000
LAST_LINE_SIZE = 150

QUESTION_PATTERNS: List[Pattern[str]] = [
    re.compile(r"○"),
    re.compile(r"●.*\d+\s+questions", re.I),
    re.compile(r"What brings you to", re.I),
    re.compile(r"Enter to select.*Tab.*Arrow.*Esc", re.I),
    re.compile(r"\[.*\]\s*\?"),
    re.compile(r"\d+\.\s+[A-Z][^.]+\?", re.M),
    re.compile(r"please select", re.I),
    re.compile(r"choose an option", re.I),
    re.compile(r"which.*would you like", re.I),
    re.compile(r"what would you like", re.I),
    re.compile(r"how can i help", re.I),
    re.compile(r"what can i do", re.I),
    re.compile(r"select.*option", re.I),
    re.compile(r"type.*message", re.I),
    re.compile(r"waiting.*input", re.I),
    re.compile(r"press.*enter", re.I),
]

CONFIRMATION_PHRASES = ("(y/n)", "[y/n]", "[yes/no]", "continue?", "proceed?", "confirm?")

PROMPT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"[>$%#❯λ]\s*$"),
    re.compile(r"\]\s*$"),
]

TOOL_PATTERNS: List[Pattern[str]] = [
    re.compile(r"→\s+(Read|Write|Edit|Bash|Grep|Glob|Task|WebFetch|WebSearch)", re.I),
    re.compile(r"using the (read|write|edit|bash|grep|glob|task|file)", re.I),
    re.compile(r"calling.*tool", re.I),
    re.compile(r"executing.*command", re.I),
    re.compile(r"running.*command", re.I),
    re.compile(r"\[tool:\s*\w+\]", re.I),
    re.compile(r"\[executing\]", re.I),
    re.compile(r"\[running\]", re.I),
    re.compile(r"reading.*file", re.I),
    re.compile(r"writing.*file", re.I),
    re.compile(r"editing.*file", re.I),
    re.compile(r"searching.*file", re.I),
]


class Classifier:
    """Maps a session plus one incoming signal to a status.

    ``None`` means "no opinion, keep the current status".
    """

    source = "base"

    def classify(self, session: Session, signal: Any, now: float) -> Optional[SessionStatus]:
        raise NotImplementedError


@dataclass
class HeuristicContext:
    tail: str
    tail_lower: str
    last_line: str
    since_output: float
    since_input: float
    recent_output: int
    timing: TimingConfig

    @classmethod
    def from_session(cls, session: Session, now: float, timing: TimingConfig) -> "HeuristicContext":
        tail = session.scrollback.tail(TAIL_SIZE)
        return cls(
            tail=tail,
            tail_lower=tail.lower(),
            last_line=tail[-LAST_LINE_SIZE:],
            since_output=now - session.last_output_at if session.last_output_at else float("inf"),
            since_input=now - session.last_input_at if session.last_input_at else float("inf"),
            recent_output=session.recent_output,
            timing=timing,
        )


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Callable[[HeuristicContext], bool]
    status: SessionStatus


def _any_match(patterns: Iterable[Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _is_question(ctx: HeuristicContext) -> bool:
    return _any_match(QUESTION_PATTERNS, ctx.tail)


def _is_confirmation(ctx: HeuristicContext) -> bool:
    return any(phrase in ctx.tail_lower for phrase in CONFIRMATION_PHRASES)


def _is_prompt(ctx: HeuristicContext) -> bool:
    return _any_match(PROMPT_PATTERNS, ctx.last_line)


def _is_tool_call(ctx: HeuristicContext) -> bool:
    return ctx.since_output < ctx.timing.tool_recency and _any_match(TOOL_PATTERNS, ctx.tail)


def _is_streaming(ctx: HeuristicContext) -> bool:
    t = ctx.timing
    if ctx.since_input < t.input_recency:
        return False
    if ctx.since_output < t.running_recency and ctx.recent_output > t.running_min_volume:
        return True
    return ctx.since_output < t.streaming_recency and ctx.recent_output > t.streaming_min_volume


DEFAULT_RULES: List[Rule] = [
    Rule("question", _is_question, SessionStatus.WAITING_INPUT),
    Rule("confirmation", _is_confirmation, SessionStatus.WAITING_INPUT),
    Rule("prompt", _is_prompt, SessionStatus.WAITING_INPUT),
    Rule("tool", _is_tool_call, SessionStatus.TOOL_CALLING),
    Rule("streaming", _is_streaming, SessionStatus.RUNNING),
]


class HeuristicClassifier(Classifier):
    """First matching rule wins; no match means idle."""

    source = "heuristic"

    def __init__(self, timing: Optional[TimingConfig] = None, rules: Optional[List[Rule]] = None):
        self.timing = timing or TimingConfig()
        self.rules: List[Rule] = list(DEFAULT_RULES if rules is None else rules)

    def add_rule(self, rule: Rule, *, before: Optional[str] = None) -> None:
        if before is None:
            self.rules.append(rule)
            return
        for i, existing in enumerate(self.rules):
            if existing.name == before:
                self.rules.insert(i, rule)
                return
        raise KeyError(before)

    def replace_rule(self, name: str, rule: Rule) -> None:
        for i, existing in enumerate(self.rules):
            if existing.name == name:
                self.rules[i] = rule
                return
        raise KeyError(name)

    def match(self, session: Session, now: float) -> Optional[Rule]:
        ctx = HeuristicContext.from_session(session, now, self.timing)
        for rule in self.rules:
            if rule.predicate(ctx):
                return rule
        return None

    def classify(self, session: Session, signal: Any, now: float) -> Optional[SessionStatus]:
        if not session.is_live:
            return SessionStatus.DISCONNECTED
        rule = self.match(session, now)
        return rule.status if rule else SessionStatus.IDLE


class StructuredEventClassifier(Classifier):
    source = "events"

    def __init__(self, catalog: Optional[AgentCatalog] = None):
        self.catalog = catalog or AgentCatalog()

    def question_tool(self, session: Session) -> str:
        rec = session.record
        return self.catalog.resolve(rec.agent_id, rec.command).question_tool

    def classify(self, session: Session, signal: Any, now: float) -> Optional[SessionStatus]:
        if not isinstance(signal, dict):
            return None
        kind = signal.get("type")

        if kind == "message_start":
            return SessionStatus.RUNNING

        if kind == "content_block_start":
            block = signal.get("content_block") or {}
            if isinstance(block, dict) and block.get("type") == "tool_use":
                session.current_tool = block.get("name") or None
                if session.current_tool == self.question_tool(session):
                    return SessionStatus.WAITING_INPUT
                return SessionStatus.TOOL_CALLING
            return SessionStatus.RUNNING

        if kind == "content_block_delta":
            delta = signal.get("delta") or {}
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                return SessionStatus.RUNNING
            return None

        if kind == "message_stop":
            if signal.get("stop_reason") == "tool_use" and session.current_tool == self.question_tool(session):
                return SessionStatus.WAITING_INPUT
            return SessionStatus.IDLE

        return None


class EventStreamDecoder:
    """Splits a byte-ish text stream into JSON objects, one per line."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, data: str) -> List[Dict[str, Any]]:
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        events: List[Dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON event line: %.80s", line)
                continue
            if isinstance(event, dict):
                events.append(event)
        return events
