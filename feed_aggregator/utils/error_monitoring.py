import logging
import json
import traceback
from typing import Dict, Any, Optional, List, Deque, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from collections import defaultdict, deque

from feed_aggregator.utils.errors import (
    AIGenerationError,
    AITimeoutError,
    ChannelNotFoundError,
    FetchError,
    InvalidPatternError,
    ParseTimeoutError,
    UnsupportedFeedFormatError,
)


@dataclass
class ErrorContext:
    """Context for an error occurrence"""
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    service: str
    operation: str
    severity: str
    subject: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ErrorSeverity(Enum):
    """Error severity levels"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorMonitor:
    """
    Keeps a bounded history of failures recorded by the orchestrator and the
    ingestor. Nothing here stops a run: callers record and carry on.
    """

    def __init__(self, max_history: int = 200) -> None:
        self.error_history: Deque[ErrorContext] = deque(maxlen=max_history)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.logger = logging.getLogger(__name__)

    def record(
        self,
        error: BaseException,
        service: str,
        operation: str,
        subject: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        error_message = str(error) or error_type
        stack_trace = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        timestamp = datetime.now(timezone.utc)
        severity = self.classify_severity(error)

        error_context = ErrorContext(
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=timestamp,
            service=service,
            operation=operation,
            severity=severity.value,
            subject=subject,
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1

        self.logger.warning(json.dumps({
            'event': 'error',
            'service': service,
            'operation': operation,
            'subject': subject,
            'severity': severity.value,
            'error_type': error_type,
            'error_message': error_message,
            'timestamp': timestamp.isoformat(),
        }, ensure_ascii=False))

        return error_context

    def classify_severity(self, error: BaseException) -> ErrorSeverity:
        message_lower = str(error).lower()

        if isinstance(error, (ChannelNotFoundError, UnsupportedFeedFormatError, InvalidPatternError)):
            return ErrorSeverity.HIGH

        if 'auth' in message_lower or 'api key' in message_lower or 'unauthorized' in message_lower:
            return ErrorSeverity.HIGH

        if isinstance(error, FetchError):
            # 4xx on a configured feed URL points at a broken channel
            if error.status is not None and 400 <= error.status < 500:
                return ErrorSeverity.MEDIUM
            return ErrorSeverity.LOW

        if isinstance(error, (ParseTimeoutError, AITimeoutError, TimeoutError)):
            return ErrorSeverity.LOW

        if isinstance(error, AIGenerationError):
            return ErrorSeverity.MEDIUM

        return ErrorSeverity.MEDIUM

    def recent(self, service: Optional[str] = None, limit: int = 20) -> List[ErrorContext]:
        items = [ctx for ctx in self.error_history if service is None or ctx.service == service]
        return items[-limit:]

    def detect_error_patterns(self) -> List[str]:
        patterns: List[str] = []
        if not self.error_history:
            return patterns

        # Count repeated (error_type, subject)
        tuple_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        for ctx in self.error_history:
            tuple_counts[(ctx.error_type, ctx.subject or ctx.service)] += 1

        for (etype, subject), count in tuple_counts.items():
            if count >= 3:
                patterns.append(
                    f"Repeated pattern: {etype} for {subject} occurred {count} times recently"
                )

        return patterns

    def get_error_statistics(self) -> Dict[str, Any]:
        total = sum(self.error_counts.values())
        return {
            'total_errors': total,
            'error_types': dict(self.error_counts),
        }
