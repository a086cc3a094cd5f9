"""Declarative markers that controller code attaches to classes and methods.

Markers are plain frozen dataclasses stored on the decorated object, so the
surface extractor reads them without depending on any web framework.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

MARKERS_ATTRIBUTE = "__contract_markers__"

HTTP_VERBS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")

T = TypeVar("T")


@dataclass(frozen=True)
class HttpVerbMarker:
    verb: str
    template: str | None = None


@dataclass(frozen=True)
class RouteMarker:
    template: str


@dataclass(frozen=True)
class ProcedureNameMarker:
    name: str


Marker = HttpVerbMarker | RouteMarker | ProcedureNameMarker


class ControllerBase:
    """Base class recognised by the surface extractor as a controller."""


def markers_of(target: object) -> tuple[Marker, ...]:
    # Only markers set on the object itself; inherited class markers do not leak.
    if isinstance(target, type):
        return tuple(target.__dict__.get(MARKERS_ATTRIBUTE, ()))
    return tuple(getattr(target, MARKERS_ATTRIBUTE, ()))


def _attach(marker: Marker) -> Callable[[T], T]:
    def decorator(target: T) -> T:
        existing = markers_of(target)
        setattr(target, MARKERS_ATTRIBUTE, existing + (marker,))
        return target

    return decorator


def http_get(template: str | None = None) -> Callable[[T], T]:
    return _attach(HttpVerbMarker("GET", template))


def http_post(template: str | None = None) -> Callable[[T], T]:
    return _attach(HttpVerbMarker("POST", template))


def http_put(template: str | None = None) -> Callable[[T], T]:
    return _attach(HttpVerbMarker("PUT", template))


def http_delete(template: str | None = None) -> Callable[[T], T]:
    return _attach(HttpVerbMarker("DELETE", template))


def http_patch(template: str | None = None) -> Callable[[T], T]:
    return _attach(HttpVerbMarker("PATCH", template))


def route(template: str) -> Callable[[T], T]:
    return _attach(RouteMarker(template))


def stored_procedure(name: str) -> Callable[[T], T]:
    return _attach(ProcedureNameMarker(name))
