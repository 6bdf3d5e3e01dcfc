# rowqueue/core/registry/handlers.py
from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from typing import Any, Dict, Iterator, MutableMapping

from rowqueue.core.errors import ErrorCode, RegistryError
from rowqueue.core.models.job import split_action

type Handler = Callable[..., Any]

# 'Reporter.run', 'mailer.deliver_later', 'cleanup'
_HANDLER_NAME = re.compile(r'^[A-Za-z_][\w]*(\.[A-Za-z_][\w]*)*$')


class NotRegistered(RegistryError, KeyError):
    """Raised when a handler key is not present in the registry.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, method: str) -> None:
        RegistryError.__init__(
            self,
            message=f"handler '{method}' not registered",
            code=ErrorCode.HANDLER_NOT_REGISTERED,
            notes=[f"requested handler: '{method}'"],
            help_text=(
                'register it with @app.handler(name) or app.handlers.register_receiver()\n'
                'in the module the worker loads'
            ),
        )
        self.method = method


class DuplicateHandlerError(RegistryError):
    """Raised when a handler key is registered more than once within the same app."""

    def __init__(self, name: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate handler name '{name}'",
            code=ErrorCode.HANDLER_DUPLICATE_NAME,
            notes=[context] if context else [],
            help_text='each handler key must be unique within a rowqueue app',
        )
        self.name = name


class InvalidHandlerName(RegistryError):
    def __init__(self, name: str) -> None:
        super().__init__(
            message=f"invalid handler name '{name}'",
            code=ErrorCode.HANDLER_INVALID_NAME,
            notes=['handler keys are dotted identifiers, e.g. Reporter.run'],
        )
        self.name = name


class HandlerRegistry(MutableMapping[str, Handler]):
    """Closed mapping of handler key -> callable.

    Jobs name their handler as ``Receiver.message``; only keys registered
    here can ever be invoked, whatever a job row says.

    Tracks source locations to detect duplicate registrations:
    - Same name + same source: silently skip (re-import scenario)
    - Same name + different source: raise DuplicateHandlerError
    """

    def __init__(self, initial: Dict[str, Handler] | None = None) -> None:
        self._data: Dict[str, Handler] = dict(initial or {})
        self._sources: Dict[str, str] = {}  # handler key -> "file:lineno"

    def __getitem__(self, key: str) -> Handler:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: str, value: Handler) -> None:
        """Discourage direct assignment; enforce uniqueness like register()."""
        if key in self._data:
            raise DuplicateHandlerError(key, 'detected via direct assignment')
        self.register(value, name=key)

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, fn: Handler, *, name: str, source: str | None = None) -> Handler:
        """Insert ``fn`` under ``name``.

        Args:
            fn: Any callable; it receives the job's args positionally.
            name: Handler key, usually ``Receiver.message``.
            source: Optional source location ("file.py:42") used to tell a
                    re-import from a true duplicate.

        Returns:
            The registered callable (the existing one on re-import).

        Raises:
            InvalidHandlerName: If ``name`` is not a dotted identifier.
            DuplicateHandlerError: If ``name`` is registered from a different source.
        """
        if not _HANDLER_NAME.match(name):
            raise InvalidHandlerName(name)
        if not callable(fn):
            raise TypeError(f'handler {name!r} must be callable, got {type(fn).__name__}')
        if name in self._data:
            existing_source = self._sources.get(name)
            if existing_source and source and existing_source == source:
                return self._data[name]
            raise DuplicateHandlerError(name, 'handler with this name already exists')
        self._data[name] = fn
        if source:
            self._sources[name] = source
        return fn

    def register_receiver(
        self,
        receiver: Any,
        *,
        messages: Iterable[str],
        name: str | None = None,
    ) -> list[str]:
        """Register ``name.message`` for each listed method of ``receiver``.

        Only the listed messages become invocable; everything else on the
        receiver stays out of reach. ``name`` defaults to the receiver's
        ``__name__`` (classes, modules, functions).

        Returns the registered keys.
        """
        receiver_name = name or getattr(receiver, '__name__', None)
        if not receiver_name:
            raise InvalidHandlerName(repr(receiver))
        keys: list[str] = []
        for message in messages:
            fn = getattr(receiver, message, None)
            if fn is None:
                raise AttributeError(f'{receiver_name} has no attribute {message!r}')
            key = f'{receiver_name}.{message}'
            self.register(fn, name=key)
            keys.append(key)
        return keys

    def resolve(self, method: str) -> Handler:
        """Look up the handler for an action reference.

        Raises NotRegistered for unknown keys, including references whose
        receiver part is empty (``'.run'``) or missing.
        """
        receiver, message = split_action(method)
        if not receiver or not message:
            raise NotRegistered(method)
        return self[f'{receiver}.{message}']

    def unregister(self, name: str) -> None:
        self._data.pop(name, None)
        self._sources.pop(name, None)

    def keys_list(self) -> list[str]:
        return list(self._data.keys())
