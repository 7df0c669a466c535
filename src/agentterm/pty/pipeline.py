"""Output pipeline — single-reader fan-out of shell output.

A shell's output descriptor has exactly one reader. Everything else that
wants the bytes (the IOBridge, command injector taps) subscribes here and
receives chunks in the order the shell produced them.
"""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

OutputHandler = Callable[[bytes], None]
ExitHandler = Callable[[int | None], None]


class OutputPipeline:
    """Synchronous subscribe/unsubscribe delivery of output chunks and exit.

    Handlers run on the event loop thread, in subscription order. A handler
    that raises is logged and skipped; it never stops delivery to the
    others. ``close()`` fires exit handlers exactly once; subscribing to
    exit after close calls the handler immediately.
    """

    def __init__(self) -> None:
        self._output_handlers: list[OutputHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._closed = False
        self._exit_code: int | None = None

    def subscribe(self, handler: OutputHandler) -> Callable[[], None]:
        """Register an output handler. Returns a function that unsubscribes it."""
        self._output_handlers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: OutputHandler) -> None:
        if handler in self._output_handlers:
            self._output_handlers.remove(handler)

    def on_exit(self, handler: ExitHandler) -> Callable[[], None]:
        """Register an exit handler. Returns a function that removes it."""
        if self._closed:
            self._call_exit(handler, self._exit_code)
            return lambda: None
        self._exit_handlers.append(handler)
        return lambda: self._remove_exit(handler)

    def _remove_exit(self, handler: ExitHandler) -> None:
        if handler in self._exit_handlers:
            self._exit_handlers.remove(handler)

    def publish(self, data: bytes) -> None:
        """Deliver one chunk to every output handler."""
        if self._closed or not data:
            return
        for handler in list(self._output_handlers):
            try:
                handler(data)
            except Exception:
                logger.exception("Output handler %r failed", handler)

    def close(self, exit_code: int | None) -> None:
        """Mark the stream finished and notify exit handlers once."""
        if self._closed:
            return
        self._closed = True
        self._exit_code = exit_code
        handlers = list(self._exit_handlers)
        self._exit_handlers.clear()
        self._output_handlers.clear()
        for handler in handlers:
            self._call_exit(handler, exit_code)

    @staticmethod
    def _call_exit(handler: ExitHandler, exit_code: int | None) -> None:
        try:
            handler(exit_code)
        except Exception:
            logger.exception("Exit handler %r failed", handler)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def subscriber_count(self) -> int:
        return len(self._output_handlers)
