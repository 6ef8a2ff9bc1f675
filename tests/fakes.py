"""
In-memory provider with failure injection and a call log, for tests.
"""

from typing import Optional

from smscrm.provider import InMemoryConversationProvider, ProviderError


class ScriptedConversationProvider(InMemoryConversationProvider):
    """
    Records every operation in `calls`; fail_next() queues a ProviderError
    raised by the next call of that operation.
    """

    def __init__(self, service_sid: Optional[str] = None) -> None:
        super().__init__(service_sid=service_sid)
        self._failures: dict[str, list[ProviderError]] = {}
        self.calls: list[str] = []

    def fail_next(self, operation: str, error: ProviderError) -> None:
        with self._lock:
            self._failures.setdefault(operation, []).append(error)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)
