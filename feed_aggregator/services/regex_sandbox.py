"""
Isolated execution of untrusted regular expressions.

Parser definitions are written by users and by the AI backend, and Python's
`re` engine backtracks, so a single pathological pattern can pin a CPU for
minutes. Every match therefore runs in a short-lived worker process that is
terminated once its time budget is spent.
"""

import asyncio
import logging
import multiprocessing
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


MAX_SUBJECT_LENGTH = 1_000_000
MAX_PATTERN_LENGTH = 1_000
DEFAULT_FLAGS = re.IGNORECASE | re.DOTALL
DEFAULT_TIMEOUT = 2.0

# JavaScript-style named groups and named backreferences
JS_NAMED_GROUP_RE = re.compile(r'\(\?<(?![=!])')
JS_NAMED_BACKREF_RE = re.compile(r'\\k<([A-Za-z_][A-Za-z0-9_]*)>')


@dataclass
class RegexMatch:
    """Picklable snapshot of a re.Match."""

    text: str
    groups: Tuple[Optional[str], ...] = ()
    start: int = 0
    end: int = 0
    named: Dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_match(cls, match: 're.Match') -> 'RegexMatch':
        return cls(
            text=match.group(0),
            groups=match.groups(),
            start=match.start(),
            end=match.end(),
            named=match.groupdict(),
        )

    def group(self, index: int = 0) -> Optional[str]:
        if index == 0:
            return self.text
        if 0 < index <= len(self.groups):
            return self.groups[index - 1]
        return None

    def first_group_or_match(self) -> str:
        """First capture group when it matched something, else the whole match"""
        if self.groups and self.groups[0]:
            return self.groups[0]
        return self.text


def translate_pattern(pattern: str) -> str:
    """Rewrite JavaScript named-group syntax into Python's."""
    pattern = JS_NAMED_GROUP_RE.sub('(?P<', pattern)
    return JS_NAMED_BACKREF_RE.sub(lambda m: f'(?P={m.group(1)})', pattern)


def _regex_worker(conn, subject: str, pattern: str, flags: int) -> None:
    """Entry point of the worker process: one search, one reply."""
    try:
        match = re.compile(pattern, flags).search(subject)
        conn.send(('ok', RegexMatch.from_match(match) if match else None))
    except (re.error, RecursionError, MemoryError) as e:
        conn.send(('error', str(e)))
    finally:
        conn.close()


def _start_method() -> str:
    methods = multiprocessing.get_all_start_methods()
    return 'forkserver' if 'forkserver' in methods else 'spawn'


class RegexSandbox:
    """
    Single entry point for running stored or AI-suggested patterns.

    `run` never raises for bad input: oversized subjects or patterns,
    patterns that fail to compile, runs that exceed the timeout and crashed
    workers all yield None and a log line.
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT):
        self.default_timeout = default_timeout
        self._context = multiprocessing.get_context(_start_method())
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def compile_error(pattern: str, flags: int = DEFAULT_FLAGS) -> Optional[str]:
        """Compilation error message for a pattern, or None when it compiles"""
        try:
            re.compile(translate_pattern(pattern), flags)
        except re.error as e:
            return str(e)
        return None

    async def run(
        self,
        subject: str,
        pattern: str,
        flags: int = DEFAULT_FLAGS,
        timeout: Optional[float] = None,
    ) -> Optional[RegexMatch]:
        if not subject or not pattern:
            return None

        if len(subject) > MAX_SUBJECT_LENGTH:
            self.logger.warning(f"Subject too large for regex ({len(subject)} chars), skipping")
            return None

        if len(pattern) > MAX_PATTERN_LENGTH:
            self.logger.warning(f"Pattern too long ({len(pattern)} chars), skipping")
            return None

        translated = translate_pattern(pattern)
        error = self.compile_error(translated, flags)
        if error:
            self.logger.warning(f"Invalid regular expression {pattern[:80]!r}: {error}")
            return None

        budget = self.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._run_in_process, subject, translated, flags, budget
        )

    def _run_in_process(self, subject: str, pattern: str, flags: int, timeout: float) -> Optional[RegexMatch]:
        parent_conn, child_conn = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_regex_worker,
            args=(child_conn, subject, pattern, flags),
            daemon=True,
        )

        try:
            process.start()
            child_conn.close()

            if not parent_conn.poll(timeout):
                self.logger.warning(f"Regex timed out after {timeout}s: {pattern[:80]!r}")
                return None

            status, payload = parent_conn.recv()
            if status == 'error':
                self.logger.warning(f"Regex failed in worker: {payload}")
                return None
            return payload

        except (EOFError, OSError) as e:
            self.logger.warning(f"Regex worker crashed: {e}")
            return None

        finally:
            parent_conn.close()
            child_conn.close()
            self._reap(process)

    @staticmethod
    def _reap(process) -> None:
        if process.pid is None:
            return
        if process.is_alive():
            process.terminate()
        process.join(timeout=1.0)
        if process.is_alive():
            process.kill()
            process.join(timeout=1.0)
