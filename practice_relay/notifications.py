"""
Notification sink.

User-facing success/warning/error/info signals. The layer only emits them;
delivery (toasts, push, nothing at all) belongs to the caller.
"""

from __future__ import annotations

from loguru import logger


class NotificationSink:
    """Fire-and-forget notifications. Subclasses override ``notify``."""

    def notify(self, level: str, message: str) -> None:
        raise NotImplementedError

    def info(self, message: str) -> None:
        self._safe_notify("info", message)

    def success(self, message: str) -> None:
        self._safe_notify("success", message)

    def warning(self, message: str) -> None:
        self._safe_notify("warning", message)

    def error(self, message: str) -> None:
        self._safe_notify("error", message)

    def _safe_notify(self, level: str, message: str) -> None:
        try:
            self.notify(level, message)
        except Exception as exc:  # Sink failures never affect the caller
            logger.warning("Notification sink failed: {}", exc)


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log."""

    _LEVELS = {
        "info": "INFO",
        "success": "SUCCESS",
        "warning": "WARNING",
        "error": "ERROR",
    }

    def notify(self, level: str, message: str) -> None:
        logger.log(self._LEVELS.get(level, "INFO"), "[notify] {}", message)
