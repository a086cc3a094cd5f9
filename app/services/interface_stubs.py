from __future__ import annotations

import inspect
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SKIPPED_BASES = {object, Protocol}


class StubMethodCalled(NotImplementedError):
    def __init__(self, method_name: str, type_name: str) -> None:
        super().__init__(
            f"Method '{method_name}' was called on synthesized implementation {type_name}"
        )
        self.method_name = method_name
        self.type_name = type_name


def is_interface(candidate: object) -> bool:
    """ABCs that still declare abstract methods, or ``typing.Protocol`` classes."""
    if not inspect.isclass(candidate):
        return False
    if getattr(candidate, "_is_protocol", False):
        return True
    return inspect.isabstract(candidate)


def interface_methods(interface: type) -> dict[str, Callable[..., Any]]:
    """Public methods of ``interface`` and every base it extends, first in MRO wins."""
    methods: dict[str, Callable[..., Any]] = {}
    for klass in interface.__mro__:
        if klass in _SKIPPED_BASES or klass.__module__ in ("abc", "typing"):
            continue
        for name, member in vars(klass).items():
            if name.startswith("_") or name in methods:
                continue
            if isinstance(member, (staticmethod, classmethod)):
                member = member.__func__
            if inspect.isfunction(member):
                methods[name] = member
    return methods


def synthesize_stub_type(interface: type[T]) -> type[T]:
    if not is_interface(interface):
        raise TypeError(f"{getattr(interface, '__name__', interface)!r} must be an interface")

    type_name = f"{interface.__name__}Stub_{uuid.uuid4().hex}"
    namespace: dict[str, Any] = {"__module__": __name__}
    for name, method in interface_methods(interface).items():
        namespace[name] = _failing_method(name, type_name, method)
    for name in sorted(getattr(interface, "__abstractmethods__", ())):
        member = inspect.getattr_static(interface, name, None)
        if name not in namespace and isinstance(member, property) and member.fget is not None:
            namespace[name] = property(_failing_method(name, type_name, member.fget))

    stub_type = type(type_name, (interface,), namespace)
    logger.info(
        "synthesize_stub_type: interface=%s type=%s members=%s",
        interface.__name__,
        type_name,
        len(namespace) - 1,
    )
    return stub_type


def synthesize_stub(interface: type[T]) -> T:
    return synthesize_stub_type(interface)()


def _failing_method(name: str, type_name: str, original: Callable[..., Any]) -> Callable[..., Any]:
    def method(self: object, *args: object, **kwargs: object) -> Any:
        raise StubMethodCalled(name, type_name)

    method.__name__ = name
    method.__qualname__ = f"{type_name}.{name}"
    method.__doc__ = original.__doc__
    try:
        method.__signature__ = inspect.signature(original)  # type: ignore[attr-defined]
    except (TypeError, ValueError):
        pass
    return method


@dataclass(frozen=True)
class ProbeResult:
    endpoint: str
    reached: str | None
    error: str | None = None


def instantiate_with_stubs(
    controller_type: type[T],
    collaborator_types: dict[str, type],
    fill_value: object = None,
) -> T:
    """Build a controller whose interface-typed constructor arguments are stubs.

    Other required constructor parameters receive ``fill_value``.
    """
    kwargs: dict[str, object] = {}
    for name, param in inspect.signature(controller_type).parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        if name in collaborator_types:
            kwargs[name] = synthesize_stub(collaborator_types[name])
        elif param.default is param.empty:
            kwargs[name] = fill_value
    return controller_type(**kwargs)


async def probe_endpoint(
    controller: object,
    method_name: str,
    arguments: dict[str, object],
) -> ProbeResult:
    """Call an endpoint on a stubbed controller and report the stub method it reached."""
    key = f"{type(controller).__name__}.{method_name}"
    try:
        outcome = getattr(controller, method_name)(**arguments)
        if inspect.isawaitable(outcome):
            await outcome
    except StubMethodCalled as exc:
        return ProbeResult(endpoint=key, reached=exc.method_name)
    except Exception as exc:  # noqa: BLE001 - probe outcome is reported, not raised
        return ProbeResult(endpoint=key, reached=None, error=f"{type(exc).__name__}: {exc}")
    return ProbeResult(endpoint=key, reached=None)
