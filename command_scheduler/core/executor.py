"""
Command execution for the scheduler.

The scheduler only talks to the CommandExecutor protocol. RegistryExecutor is
the bundled implementation: it dispatches a command_slug to a Python callable
registered in a CommandRegistry and turns whatever the handler returns (or
raises) into a CommandResult.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError

from .exceptions import CommandNotFoundError, ScheduleValidationError
from ..schemas.command import CommandResult
from ..utils.logger import get_logger

logger = get_logger(__name__)

CommandHandler = Callable[[Dict[str, Any]], Any]


class CommandExecutor(Protocol):
    """Runs a command by slug and reports the outcome."""

    def execute(self, command_slug: str, payload: Dict[str, Any]) -> CommandResult:
        ...


def normalize_result(value: Any) -> CommandResult:
    """
    Coerce an executor or handler return value into a CommandResult.

    Accepts a CommandResult, a dict with at least a ``success`` key, a string
    (treated as successful output) or None (success without output).
    """
    if isinstance(value, CommandResult):
        return value
    if value is None:
        return CommandResult.ok()
    if isinstance(value, bool):
        return CommandResult(success=value)
    if isinstance(value, dict):
        try:
            return CommandResult.model_validate(value)
        except ValidationError as e:
            return CommandResult.fail(f"Invalid command result: {e}")
    if isinstance(value, str):
        return CommandResult.ok(value)
    return CommandResult.ok(str(value))


class CommandRegistry:
    """Maps command slugs to handler callables."""

    def __init__(self):
        self._handlers: Dict[str, CommandHandler] = {}
        self._lock = threading.Lock()

    def register(self, command_slug: str, handler: CommandHandler) -> CommandHandler:
        if not command_slug:
            raise ScheduleValidationError("Command slug must not be empty", field="command_slug")
        if not callable(handler):
            raise ScheduleValidationError(
                f"Handler for '{command_slug}' is not callable",
                field="handler",
                value=repr(handler)
            )

        with self._lock:
            if command_slug in self._handlers:
                logger.warning(f"Replacing handler for command '{command_slug}'")
            self._handlers[command_slug] = handler
        return handler

    def command(self, command_slug: str) -> Callable[[CommandHandler], CommandHandler]:
        """
        Decorator form of register().

        Usage:
            @registry.command("digest")
            def send_digest(payload):
                ...
        """
        def decorator(func: CommandHandler) -> CommandHandler:
            return self.register(command_slug, func)
        return decorator

    def unregister(self, command_slug: str) -> None:
        with self._lock:
            self._handlers.pop(command_slug, None)

    def get(self, command_slug: str) -> CommandHandler:
        handler = self._handlers.get(command_slug)
        if handler is None:
            raise CommandNotFoundError(command_slug)
        return handler

    def __contains__(self, command_slug: str) -> bool:
        return command_slug in self._handlers

    def slugs(self) -> List[str]:
        return sorted(self._handlers)


# Process-wide registry used by the Celery tasks
default_registry = CommandRegistry()
command = default_registry.command


class RegistryExecutor:
    """Execute commands from a CommandRegistry, optionally with a timeout."""

    def __init__(self, registry: Optional[CommandRegistry] = None, timeout_seconds: Optional[float] = None):
        self.registry = registry or default_registry
        self.timeout_seconds = timeout_seconds
        self._pool: Optional[ThreadPoolExecutor] = None

    def execute(self, command_slug: str, payload: Dict[str, Any]) -> CommandResult:
        try:
            handler = self.registry.get(command_slug)
        except CommandNotFoundError as e:
            logger.warning(str(e))
            return CommandResult.fail(e.message)

        try:
            if self.timeout_seconds:
                value = self._run_with_timeout(handler, payload or {})
            else:
                value = handler(payload or {})
        except FutureTimeoutError:
            logger.error(f"Command '{command_slug}' exceeded timeout of {self.timeout_seconds} seconds")
            return CommandResult.fail(f"Command exceeded timeout of {self.timeout_seconds} seconds")
        except Exception as e:
            logger.exception(f"Command '{command_slug}' raised: {str(e)}")
            return CommandResult.fail(str(e) or e.__class__.__name__)

        return normalize_result(value)

    def _run_with_timeout(self, handler: CommandHandler, payload: Dict[str, Any]) -> Any:
        # The handler thread keeps running after a timeout; it cannot be cancelled
        if self._pool is None:
            self._pool = ThreadPoolExecutor(thread_name_prefix="command")
        future = self._pool.submit(handler, payload)
        return future.result(timeout=self.timeout_seconds)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
