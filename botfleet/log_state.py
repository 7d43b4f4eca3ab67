"""Connection state and pairing-code detection from bot log text.

Everything here is stateless: each call re-parses the bounded tail it is
given. Markers are the fixed phrases the bots print at each link event.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

# Lines scanned at most, counted from the end of the tail
DEFAULT_TAIL_LINES = 300
# A disconnect this close to the end always wins over older connects
RECENT_DISCONNECT_WINDOW = 30
# Starting markers only count when this recent
STARTING_WINDOW = 20

DISCONNECTED_MARKERS = (
    "WHATSAPP DESCONECTADO",
    "SESIÓN CERRADA - LOGOUT DETECTADO",
    "Dispositivo desvinculado",
    "esperando nueva conexión",
)
CONNECTED_MARKERS = (
    "BOT CONECTADO EXITOSAMENTE",
    "WHATSAPP CONECTADO",
    "El bot está listo para recibir mensajes",
    "Esperando mensajes de WhatsApp",
    "Google Calendar inicializado",
    "Authenticated",
)
STARTING_MARKERS = (
    "Inicializando servicios",
    "Conectando a WhatsApp",
    "AtomicBot WhatsApp",
    "Starting bot",
)

PAIRING_BLOCK_CHARS = frozenset("█▄▀▌▐")

# "[..]" groups and Go-style "2006/01/02 15:04:05" timestamps ahead of the payload
_LOG_PREFIX = re.compile(
    r"^(?:\s*\[[^\]]*\])+ ?"
    r"|^\d{4}[/-]\d{2}[/-]\d{2}[ T]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})? ?"
)


class TenantState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AWAITING_PAIRING = "awaiting_pairing"
    STARTING = "starting"
    UNKNOWN = "unknown"


@dataclass
class StateReading:
    state: TenantState
    pairing_code: str = ""
    detail: str = ""


def _bounded(log_tail: str, max_lines: int) -> list[str]:
    lines = log_tail.splitlines()
    return lines[-max_lines:] if max_lines > 0 else lines


def _has_block(line: str) -> bool:
    return any(ch in PAIRING_BLOCK_CHARS for ch in line)


def _contains_any(line: str, markers: tuple[str, ...]) -> bool:
    return any(marker in line for marker in markers)


def strip_log_prefix(line: str) -> str:
    return _LOG_PREFIX.sub("", line, count=1).rstrip()


def extract_pairing_code(log_tail: str, max_lines: int = DEFAULT_TAIL_LINES) -> str:
    """Return the most recent contiguous block-character run, top to bottom.

    Log prefixes are stripped from each line. Returns an empty string when
    the tail holds no such run.
    """
    run: list[str] = []
    for line in reversed(_bounded(log_tail, max_lines)):
        if _has_block(line):
            run.append(strip_log_prefix(line))
        elif run:
            break
    run.reverse()
    return "\n".join(run)


def _last_link_event(lines: list[str]) -> tuple[TenantState, int] | None:
    """Most recent connect/disconnect marker and its distance from the end."""
    for distance, line in enumerate(reversed(lines)):
        if _contains_any(line, DISCONNECTED_MARKERS):
            return TenantState.DISCONNECTED, distance
        if _contains_any(line, CONNECTED_MARKERS):
            return TenantState.CONNECTED, distance
    return None


def inspect(log_tail: str, max_lines: int = DEFAULT_TAIL_LINES) -> StateReading:
    """Classify the tail and pull out a pairing code when one is relevant."""
    lines = _bounded(log_tail, max_lines)
    event = _last_link_event(lines)

    if event is not None:
        state, distance = event
        if state == TenantState.CONNECTED:
            return StateReading(TenantState.CONNECTED, detail="connected marker found")
        if distance < RECENT_DISCONNECT_WINDOW:
            return StateReading(
                TenantState.DISCONNECTED,
                pairing_code=extract_pairing_code(log_tail, max_lines),
                detail="disconnected, scan the new pairing code when it appears",
            )

    code = extract_pairing_code(log_tail, max_lines)
    if code:
        return StateReading(TenantState.AWAITING_PAIRING, pairing_code=code)

    for line in lines[-STARTING_WINDOW:]:
        if _contains_any(line, STARTING_MARKERS):
            return StateReading(TenantState.STARTING, detail="bot starting, no pairing code yet")

    if event is not None:
        return StateReading(TenantState.DISCONNECTED, detail="last link event was a disconnect")

    recent = [line for line in lines[-10:] if line.strip()]
    return StateReading(TenantState.UNKNOWN, detail="\n".join(recent))


def classify(log_tail: str, max_lines: int = DEFAULT_TAIL_LINES) -> TenantState:
    return inspect(log_tail, max_lines).state
