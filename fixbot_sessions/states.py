from __future__ import annotations

from enum import Enum

from .errors import InvalidStateTransition


class SessionState(str, Enum):
    INICIO = "INICIO"
    CANCELADO = "CANCELADO"
    FINALIZADO = "FINALIZADO"
    TIMEOUT = "TIMEOUT"

    # Report collection (fields may be filled in any order).
    REFRIGERADOR_ACTIVO = "REFRIGERADOR_ACTIVO"
    VEHICULO_ACTIVO = "VEHICULO_ACTIVO"

    # Confirmation of data detected from photos or OCR.
    REFRIGERADOR_CONFIRMAR_EQUIPO = "REFRIGERADOR_CONFIRMAR_EQUIPO"
    VEHICULO_CONFIRMAR_DATOS_AI = "VEHICULO_CONFIRMAR_DATOS_AI"
    REFRIGERADOR_CONFIRMAR_DATOS_AI = "REFRIGERADOR_CONFIRMAR_DATOS_AI"

    # Satisfaction survey.
    ENCUESTA_INVITACION = "ENCUESTA_INVITACION"
    ENCUESTA_PREGUNTA_1 = "ENCUESTA_PREGUNTA_1"
    ENCUESTA_PREGUNTA_2 = "ENCUESTA_PREGUNTA_2"
    ENCUESTA_PREGUNTA_3 = "ENCUESTA_PREGUNTA_3"
    ENCUESTA_PREGUNTA_4 = "ENCUESTA_PREGUNTA_4"
    ENCUESTA_PREGUNTA_5 = "ENCUESTA_PREGUNTA_5"
    ENCUESTA_PREGUNTA_6 = "ENCUESTA_PREGUNTA_6"
    ENCUESTA_COMENTARIO = "ENCUESTA_COMENTARIO"
    ENCUESTA_ESPERA_COMENTARIO = "ENCUESTA_ESPERA_COMENTARIO"

    CONSULTA_ESPERA_TICKET = "CONSULTA_ESPERA_TICKET"
    AGENTE_ACTIVO = "AGENTE_ACTIVO"


class TransitionOrigin(str, Enum):
    USER = "USER"
    BOT = "BOT"
    TIMER = "TIMER"
    API = "API"


INITIAL_STATE = SessionState.INICIO
TIMEOUT_STATE = SessionState.TIMEOUT

TERMINAL_STATES = frozenset(
    {
        SessionState.CANCELADO,
        SessionState.FINALIZADO,
        SessionState.TIMEOUT,
    }
)

# Sessions in these states have nothing for the inactivity reaper to close.
RESTING_STATES = TERMINAL_STATES | {INITIAL_STATE}


def clears_session_data(state: SessionState) -> bool:
    return state in RESTING_STATES


def coerce_state(value: object) -> SessionState:
    if isinstance(value, SessionState):
        return value
    raw = str(value or "").strip().upper()
    try:
        return SessionState(raw)
    except ValueError:
        raise InvalidStateTransition(value) from None


def coerce_origin(value: object) -> TransitionOrigin:
    if isinstance(value, TransitionOrigin):
        return value
    raw = str(value or "").strip().upper()
    try:
        return TransitionOrigin(raw)
    except ValueError:
        raise ValueError(f"Unknown transition origin: {value!r}") from None
