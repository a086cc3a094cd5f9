from __future__ import annotations

import importlib
import inspect
import logging
import types
import typing
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from app.services.interface_stubs import interface_methods, is_interface
from app.services.sproc_schema import DEFAULT_SCHEMA, ProcedureName
from app.services.surface_markers import (
    HTTP_VERBS,
    HttpVerbMarker,
    ProcedureNameMarker,
    RouteMarker,
    markers_of,
)

logger = logging.getLogger(__name__)

BINDING_MARKER = "marker"
BINDING_CONVENTION = "convention"


@dataclass(frozen=True)
class Options:
    controller_base_names: tuple[str, ...] = ("ControllerBase",)
    controller_suffix: str = "Controller"
    collaborator_token: str = "Manager"
    procedure_infix: str = "__"
    default_schema: str = DEFAULT_SCHEMA


@dataclass(frozen=True)
class ParameterDescriptor:
    name: str
    type_name: str
    full_type_name: str = ""
    is_optional: bool = False
    has_default: bool = False
    default: Any = None


@dataclass(frozen=True)
class EndpointDescriptor:
    owner: str
    method_name: str
    http_verb: str
    route: str
    parameters: tuple[ParameterDescriptor, ...] = ()
    return_type: str = ""
    procedure_name: str | None = None
    binding_source: str | None = None

    @property
    def key(self) -> str:
        return f"{self.owner}.{self.method_name}"


@dataclass(frozen=True)
class MethodDescriptor:
    name: str
    parameters: tuple[ParameterDescriptor, ...] = ()
    return_type: str = ""
    procedure_name: str | None = None
    binding_source: str | None = None


@dataclass(frozen=True)
class CollaboratorDescriptor:
    name: str
    full_name: str
    parameter_name: str
    methods: tuple[MethodDescriptor, ...] = ()

    def method(self, name: str) -> MethodDescriptor | None:
        for method in self.methods:
            if method.name == name:
                return method
        return None


@dataclass(frozen=True)
class ControllerDescriptor:
    name: str
    full_name: str
    route: str
    endpoints: tuple[EndpointDescriptor, ...] = ()
    collaborator: CollaboratorDescriptor | None = None
    errors: tuple[str, ...] = field(default_factory=tuple)


def load_types(module_names: Iterable[str]) -> tuple[list[type], list[str]]:
    """Import modules and list the classes each one defines, in definition order."""
    loaded: list[type] = []
    errors: list[str] = []
    seen: set[type] = set()
    for module_name in module_names:
        try:
            module = importlib.import_module(module_name)
        except Exception as exc:  # noqa: BLE001 - import failures are reported per module
            logger.warning("load_types: module=%s error=%s", module_name, type(exc).__name__)
            errors.append(f"MODULE_IMPORT_FAILED: {module_name}")
            continue
        for member in vars(module).values():
            if inspect.isclass(member) and member.__module__ == module.__name__:
                if member not in seen:
                    seen.add(member)
                    loaded.append(member)
    return loaded, errors


def is_controller(candidate: type, options: Options) -> bool:
    if not inspect.isclass(candidate) or inspect.isabstract(candidate):
        return False
    if candidate.__name__ in options.controller_base_names:
        return False
    base_names = {base.__name__ for base in candidate.__mro__[1:]}
    if base_names.intersection(options.controller_base_names):
        return True
    return candidate.__name__.endswith(options.controller_suffix)


def extract_controllers(
    candidates: Iterable[type], options: Options | None = None
) -> list[ControllerDescriptor]:
    options = options or Options()
    controllers: list[ControllerDescriptor] = []
    for candidate in candidates:
        if not is_controller(candidate, options):
            continue
        try:
            controllers.append(_describe_controller(candidate, options))
        except Exception as exc:  # noqa: BLE001 - one broken controller must not stop the run
            logger.warning(
                "extract_controllers: controller=%s error=%s",
                candidate.__name__,
                type(exc).__name__,
            )
            controllers.append(
                ControllerDescriptor(
                    name=candidate.__name__,
                    full_name=_full_name(candidate),
                    route="",
                    errors=(f"CONTROLLER_EXTRACTION_FAILED: {type(exc).__name__}: {exc}",),
                )
            )
    logger.info(
        "extract_controllers: controllers=%s endpoints=%s",
        len(controllers),
        sum(len(controller.endpoints) for controller in controllers),
    )
    return controllers


def extract_endpoints(
    candidates: Iterable[type], options: Options | None = None
) -> list[EndpointDescriptor]:
    return [
        endpoint
        for controller in extract_controllers(candidates, options)
        for endpoint in controller.endpoints
    ]


def endpoint_functions(
    controller: type, options: Options | None = None
) -> list[tuple[str, Callable[..., Any]]]:
    """Public functions declared on the controller itself that qualify as endpoints."""
    options = options or Options()
    found: list[tuple[str, Callable[..., Any]]] = []
    for name, member in vars(controller).items():
        if name.startswith("_"):
            continue
        if isinstance(member, (staticmethod, classmethod)):
            member = member.__func__
        if not inspect.isfunction(member):
            continue
        has_verb_marker = any(isinstance(m, HttpVerbMarker) for m in markers_of(member))
        if has_verb_marker or _conventional_verb(name) is not None:
            found.append((name, member))
    return found


def find_collaborator_type(
    controller: type, options: Options | None = None
) -> tuple[str, type] | None:
    """Constructor parameter holding the injected manager interface, if any."""
    options = options or Options()
    try:
        signature = inspect.signature(controller)
    except (TypeError, ValueError):
        return None
    hints = typing.get_type_hints(controller.__init__)
    for name, param in signature.parameters.items():
        annotation = hints.get(name, param.annotation)
        if not is_interface(annotation):
            continue
        if options.collaborator_token in annotation.__name__:
            return name, annotation
    return None


def describe_parameters(func: Callable[..., Any]) -> tuple[ParameterDescriptor, ...]:
    signature = inspect.signature(func)
    hints = _safe_type_hints(func)
    described: list[ParameterDescriptor] = []
    for index, (name, param) in enumerate(signature.parameters.items()):
        if index == 0 and name in ("self", "cls"):
            continue
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        type_name, full_type_name = annotation_names(hints.get(name, param.annotation))
        has_default = param.default is not param.empty
        described.append(
            ParameterDescriptor(
                name=name,
                type_name=type_name,
                full_type_name=full_type_name,
                is_optional=has_default,
                has_default=has_default,
                default=param.default if has_default else None,
            )
        )
    return tuple(described)


def resolve_procedure_binding(
    func: Callable[..., Any], name: str, options: Options | None = None
) -> tuple[str | None, str | None]:
    options = options or Options()
    for marker in markers_of(func):
        if isinstance(marker, ProcedureNameMarker):
            parsed = ProcedureName.parse(marker.name, default_schema=options.default_schema)
            return parsed.unescaped_full_name, BINDING_MARKER

    # First occurrence of the infix wins; later ones become schema separators.
    infix = options.procedure_infix
    index = name.find(infix) if infix else -1
    if index > 0:
        remainder = name[index + len(infix) :]
        if remainder:
            qualified = remainder.replace(infix, ".")
            parsed = ProcedureName.parse(qualified, default_schema=options.default_schema)
            return parsed.unescaped_full_name, BINDING_CONVENTION
    return None, None


def annotation_names(annotation: Any) -> tuple[str, str]:
    if annotation is inspect.Parameter.empty or annotation is None:
        return "", ""
    if isinstance(annotation, str):
        return _string_annotation_name(annotation), annotation
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        members = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(members) == 1:
            return annotation_names(members[0])
    if inspect.isclass(annotation) and origin is None:
        return annotation.__name__, _full_name(annotation)
    text = str(annotation).replace("typing.", "")
    return text, text


def _describe_controller(controller: type, options: Options) -> ControllerDescriptor:
    errors: list[str] = []
    controller_route = _controller_route(controller, options)
    endpoints = []
    for name, func in endpoint_functions(controller, options):
        parameters, return_type = _signature_parts(func, name, errors)
        procedure_name, binding_source = resolve_procedure_binding(func, name, options)
        route = _build_full_route(controller_route, _method_route(func, name), name)
        endpoints.append(
            EndpointDescriptor(
                owner=controller.__name__,
                method_name=name,
                http_verb=_http_verb(func, name),
                route=_substitute_tokens(route, controller, name, options),
                parameters=parameters,
                return_type=return_type,
                procedure_name=procedure_name,
                binding_source=binding_source,
            )
        )

    collaborator = None
    try:
        located = find_collaborator_type(controller, options)
    except Exception as exc:  # noqa: BLE001 - unresolved annotations degrade to no collaborator
        errors.append(f"COLLABORATOR_UNRESOLVED: {type(exc).__name__}: {exc}")
        located = None
    if located is not None:
        parameter_name, interface = located
        collaborator = CollaboratorDescriptor(
            name=interface.__name__,
            full_name=_full_name(interface),
            parameter_name=parameter_name,
            methods=_describe_methods(interface, options, errors),
        )

    return ControllerDescriptor(
        name=controller.__name__,
        full_name=_full_name(controller),
        route=controller_route,
        endpoints=tuple(endpoints),
        collaborator=collaborator,
        errors=tuple(errors),
    )


def _describe_methods(
    interface: type, options: Options, errors: list[str]
) -> tuple[MethodDescriptor, ...]:
    methods = []
    for name, func in interface_methods(interface).items():
        parameters, return_type = _signature_parts(func, f"{interface.__name__}.{name}", errors)
        procedure_name, binding_source = resolve_procedure_binding(func, name, options)
        methods.append(
            MethodDescriptor(
                name=name,
                parameters=parameters,
                return_type=return_type,
                procedure_name=procedure_name,
                binding_source=binding_source,
            )
        )
    return tuple(methods)


def _conventional_verb(name: str) -> str | None:
    lowered = name.lower()
    for verb in HTTP_VERBS:
        if not lowered.startswith(verb.lower()):
            continue
        rest = name[len(verb) :]
        if not rest or rest[0] == "_" or rest[0].isupper():
            return verb
    return None


def _http_verb(func: Callable[..., Any], name: str) -> str:
    marked = {m.verb for m in markers_of(func) if isinstance(m, HttpVerbMarker)}
    for verb in HTTP_VERBS:
        if verb in marked:
            return verb
    return _conventional_verb(name) or "GET"


def _controller_route(controller: type, options: Options) -> str:
    for marker in markers_of(controller):
        if isinstance(marker, RouteMarker):
            return marker.template
    return f"api/{_short_controller_name(controller, options)}"


def _method_route(func: Callable[..., Any], name: str) -> str:
    markers = markers_of(func)
    for marker in markers:
        if isinstance(marker, RouteMarker):
            return marker.template
    for marker in markers:
        if isinstance(marker, HttpVerbMarker) and marker.template:
            return marker.template
    return name


def _build_full_route(controller_route: str, method_route: str, method_name: str) -> str:
    if not controller_route:
        return method_route
    if not method_route:
        return f"{controller_route}/{method_name}"
    if method_route.startswith("/"):
        return method_route
    return f"{controller_route}/{method_route}"


def _substitute_tokens(route: str, controller: type, method_name: str, options: Options) -> str:
    return route.replace("[controller]", _short_controller_name(controller, options)).replace(
        "[action]", method_name
    )


def _short_controller_name(controller: type, options: Options) -> str:
    name = controller.__name__
    suffix = options.controller_suffix
    if suffix and name.endswith(suffix) and name != suffix:
        return name[: -len(suffix)]
    return name


def _signature_parts(
    func: Callable[..., Any], label: str, errors: list[str]
) -> tuple[tuple[ParameterDescriptor, ...], str]:
    try:
        parameters = describe_parameters(func)
    except (TypeError, ValueError) as exc:
        errors.append(f"PARAMETERS_UNAVAILABLE: {label}: {exc}")
        parameters = ()
    try:
        return_type = _return_type(func)
    except (TypeError, ValueError) as exc:
        errors.append(f"RETURN_TYPE_UNAVAILABLE: {label}: {exc}")
        return_type = ""
    return parameters, return_type


def _return_type(func: Callable[..., Any]) -> str:
    hints = _safe_type_hints(func)
    if "return" in hints:
        annotation = hints["return"]
    else:
        annotation = inspect.signature(func).return_annotation
    return annotation_names(annotation)[0]


def _safe_type_hints(func: Callable[..., Any]) -> dict[str, Any]:
    try:
        return typing.get_type_hints(func)
    except Exception:  # noqa: BLE001 - fall back to the raw annotations
        return dict(getattr(func, "__annotations__", {}) or {})


def _string_annotation_name(annotation: str) -> str:
    text = annotation.strip()
    if text.startswith("Optional[") and text.endswith("]"):
        text = text[len("Optional[") : -1]
    members = [part.strip() for part in text.split("|") if part.strip() != "None"]
    if len(members) == 1:
        text = members[0]
    return text.rsplit(".", 1)[-1] if "[" not in text else text


def _full_name(klass: type) -> str:
    module = getattr(klass, "__module__", "")
    if module in ("builtins", ""):
        return klass.__qualname__
    return f"{module}.{klass.__qualname__}"
