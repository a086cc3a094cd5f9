from __future__ import annotations

import dis
import enum
import inspect
import logging
import sys
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from app.services.endpoint_surface import Options as SurfaceOptions
from app.services.endpoint_surface import endpoint_functions, is_controller

logger = logging.getLogger(__name__)

_METHOD_FLAG_IN_LOAD_ATTR = sys.version_info >= (3, 12)

# Opcodes that neither produce nor consume a receiver; skipped while lowering.
_SKIPPED_OPNAMES = {"CACHE", "EXTENDED_ARG", "NOP", "RESUME", "PRECALL", "KW_NAMES", "PUSH_NULL"}


class Op(enum.Enum):
    LOAD_SELF = "load_self"
    LOAD_FIELD = "load_field"
    LOAD_LOCAL = "load_local"
    LOAD_CONST = "load_const"
    CALL = "call"
    BOUNDARY = "boundary"


@dataclass(eq=False)
class Instruction:
    op: Op
    operand: str | None = None
    offset: int = 0
    previous: Instruction | None = None

    def __repr__(self) -> str:
        return f"Instruction({self.op.name}, {self.operand!r}, offset={self.offset})"


@dataclass(frozen=True)
class Options:
    field_token: str = "_manager"
    max_lookback: int = 8


class ReceiverResolver(Protocol):
    def is_collaborator_receiver(self, call: Instruction) -> bool: ...


class BackwardScanResolver:
    """Attributes a call to the collaborator by scanning back from the call.

    A load of ``self`` directly before the call counts by convention. Otherwise
    the first field load found decides, and the scan gives up at a boundary, at
    the lookback bound, or at the start of the method. Receivers reached
    through local variables are missed.
    """

    def __init__(self, field_token: str = "_manager", max_lookback: int = 8) -> None:
        self.field_token = field_token
        self.max_lookback = max_lookback

    def is_collaborator_receiver(self, call: Instruction) -> bool:
        previous = call.previous
        if previous is not None and previous.op is Op.LOAD_SELF:
            return True
        steps = 0
        while previous is not None and steps < self.max_lookback:
            if previous.op is Op.LOAD_FIELD:
                return self.field_token in (previous.operand or "")
            if previous.op in (Op.BOUNDARY, Op.CALL):
                return False
            previous = previous.previous
            steps += 1
        return False


def link(instructions: Iterable[Instruction]) -> list[Instruction]:
    """Set ``previous`` on each instruction so the list reads as a chain."""
    linked: list[Instruction] = []
    for instruction in instructions:
        instruction.previous = linked[-1] if linked else None
        linked.append(instruction)
    return linked


def lower_bytecode(func: Callable[..., Any]) -> list[Instruction]:
    code = getattr(inspect.unwrap(func), "__code__", None)
    if code is None:
        return []
    self_name = code.co_varnames[0] if code.co_argcount > 0 else None

    lowered: list[Instruction] = []
    for instr in dis.get_instructions(code):
        opname = instr.opname
        if opname in _SKIPPED_OPNAMES:
            continue
        if opname.startswith("LOAD_FAST"):
            names = instr.argval if isinstance(instr.argval, tuple) else (instr.argval,)
            for name in names:
                op = Op.LOAD_SELF if name == self_name else Op.LOAD_LOCAL
                lowered.append(Instruction(op, name, instr.offset))
        elif opname == "LOAD_METHOD" or (
            opname == "LOAD_ATTR" and _METHOD_FLAG_IN_LOAD_ATTR and (instr.arg or 0) & 1
        ):
            lowered.append(Instruction(Op.CALL, instr.argval, instr.offset))
        elif opname == "LOAD_ATTR":
            lowered.append(Instruction(Op.LOAD_FIELD, instr.argval, instr.offset))
        elif opname in ("LOAD_CONST", "LOAD_SMALL_INT", "RETURN_CONST"):
            op = Op.BOUNDARY if opname == "RETURN_CONST" else Op.LOAD_CONST
            lowered.append(Instruction(op, None, instr.offset))
        else:
            lowered.append(Instruction(Op.BOUNDARY, opname, instr.offset))
    return link(lowered)


def collaborator_calls(
    instructions: Sequence[Instruction], resolver: ReceiverResolver
) -> list[str]:
    called: list[str] = []
    for instruction in instructions:
        if instruction.op is not Op.CALL or not instruction.operand:
            continue
        if resolver.is_collaborator_receiver(instruction) and instruction.operand not in called:
            called.append(instruction.operand)
    return called


def find_collaborator_calls(
    func: Callable[..., Any],
    options: Options | None = None,
    resolver: ReceiverResolver | None = None,
) -> list[str]:
    """Names of collaborator methods the function calls, in first-call order."""
    options = options or Options()
    if getattr(func, "__isabstractmethod__", False):
        return []
    resolver = resolver or BackwardScanResolver(options.field_token, options.max_lookback)
    return collaborator_calls(lower_bytecode(func), resolver)


def build_call_map(
    candidates: Iterable[type],
    options: Options | None = None,
    surface_options: SurfaceOptions | None = None,
) -> dict[str, list[str]]:
    options = options or Options()
    surface_options = surface_options or SurfaceOptions()
    call_map: dict[str, list[str]] = {}
    for candidate in candidates:
        if not is_controller(candidate, surface_options):
            continue
        for name, func in endpoint_functions(candidate, surface_options):
            key = f"{candidate.__name__}.{name}"
            call_map[key] = find_collaborator_calls(func, options)
    logger.info(
        "build_call_map: endpoints=%s with_calls=%s",
        len(call_map),
        sum(1 for calls in call_map.values() if calls),
    )
    return call_map
