from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fixbot_sessions.app import SessionCore, build_core  # noqa: E402
from fixbot_sessions.clock import FrozenClock  # noqa: E402
from fixbot_sessions.config import Settings  # noqa: E402
from fixbot_sessions.errors import TransientStoreError  # noqa: E402
from fixbot_sessions.models import IdleSession  # noqa: E402
from fixbot_sessions.sessions import InactivityReaper  # noqa: E402
from fixbot_sessions.states import SessionState, TransitionOrigin  # noqa: E402


def _core(tmp_path: Path, clock: FrozenClock, **callbacks) -> SessionCore:  # type: ignore[no-untyped-def]
    settings = replace(
        Settings.from_env(),
        session_backend="sqlite",
        sqlite_path=tmp_path / "sessions.db",
        redis_enabled=False,
    )
    return build_core(settings, clock=clock, **callbacks)


class _StaleScanBackend:
    """Returns a scan captured earlier, as if the sweep query ran before later activity."""

    def __init__(self, inner: object, rows: list[dict]) -> None:
        self._inner = inner
        self._rows = rows

    def __getattr__(self, name: str):  # type: ignore[no-untyped-def]
        return getattr(self._inner, name)

    async def find_idle_sessions(self, cutoff, excluded_states, limit):  # type: ignore[no-untyped-def]
        return list(self._rows)


def test_sweep_closes_idle_session_once(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        async with _core(tmp_path, clock) as core:
            await core.update_session("+521234", "REFRIGERADOR_ACTIVO", {"campo": "x"}, "USER", "start", 0)
            clock.advance(minutes=45)

            closed = await core.sweep_expired_sessions(30)
            assert closed == 1

            session = await core.get_session("+521234")
            assert session.state is SessionState.TIMEOUT
            assert session.payload is None
            assert session.version == 2

            history = await core.session_history("+521234")
            assert history[0].origin is TransitionOrigin.TIMER
            assert history[0].previous_state is SessionState.REFRIGERADOR_ACTIVO

            assert await core.sweep_expired_sessions(30) == 0
            assert core.health.sessions_swept == 1

    asyncio.run(scenario())


def test_sweep_skips_recent_and_resting_sessions(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        async with _core(tmp_path, clock) as core:
            await core.get_session("+520001")
            await core.update_session("+520002", "FINALIZADO", None, "BOT", "done", 0)
            await core.update_session("+520003", "VEHICULO_ACTIVO", {"p": 1}, "USER", "go", 0)
            clock.advance(minutes=45)
            await core.update_session("+520004", "VEHICULO_ACTIVO", {"p": 2}, "USER", "go", 0)

            assert await core.sweep_expired_sessions(30) == 1
            assert (await core.get_session("+520001")).state is SessionState.INICIO
            assert (await core.get_session("+520002")).state is SessionState.FINALIZADO
            assert (await core.get_session("+520003")).state is SessionState.TIMEOUT
            assert (await core.get_session("+520004")).state is SessionState.VEHICULO_ACTIVO

    asyncio.run(scenario())


def test_activity_after_scan_is_skipped_without_error(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        async with _core(tmp_path, clock) as core:
            await core.update_session("+521111", "REFRIGERADOR_ACTIVO", {"a": 1}, "USER", "start", 0)
            await core.update_session("+522222", "VEHICULO_ACTIVO", {"b": 1}, "USER", "start", 0)
            clock.advance(minutes=45)
            cutoff = clock.now()
            scan = await core.backend.find_idle_sessions(cutoff, ["INICIO", "FINALIZADO", "CANCELADO", "TIMEOUT"], 10)
            assert len(scan) == 2

            # Between scan and close: one owner writes a message, the other moves on.
            await core.record_inbound_message("+521111")
            await core.update_session("+522222", "VEHICULO_CONFIRMAR_DATOS_AI", {"b": 2}, "BOT", "ocr", 1)

            reaper = InactivityReaper(
                _StaleScanBackend(core.backend, scan),
                core.store,
                core.controller,
                core.reaper.executor,
                core.tasks,
                core.health,
            )
            assert await reaper.sweep(30) == 0

            assert (await core.get_session("+521111")).state is SessionState.REFRIGERADOR_ACTIVO
            assert (await core.get_session("+522222")).state is SessionState.VEHICULO_CONFIRMAR_DATOS_AI
            assert core.health.conflicts == 2

    asyncio.run(scenario())


def test_closed_callback_runs_detached_with_previous_state(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        notified: list[tuple[str, SessionState]] = []

        async def on_closed(owner_id: str, previous_state: SessionState) -> None:
            notified.append((owner_id, previous_state))

        async with _core(tmp_path, clock, on_closed=on_closed) as core:
            await core.update_session("+523333", "ENCUESTA_PREGUNTA_2", {"r": 4}, "USER", "survey", 0)
            clock.advance(minutes=31)
            assert await core.sweep_expired_sessions(30) == 1
            await core.tasks.drain()

        assert notified == [("+523333", SessionState.ENCUESTA_PREGUNTA_2)]

    asyncio.run(scenario())


def test_failing_callback_is_counted_not_raised(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()

        async def on_closed(owner_id: str, previous_state: SessionState) -> None:
            raise RuntimeError("messaging client down")

        async with _core(tmp_path, clock, on_closed=on_closed) as core:
            await core.update_session("+524444", "AGENTE_ACTIVO", None, "API", "handoff", 0)
            clock.advance(minutes=31)
            assert await core.sweep_expired_sessions(30) == 1
            await core.tasks.drain()
            assert core.health.background_failures == 1

    asyncio.run(scenario())


def test_warning_is_claimed_once_until_new_activity(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        warned: list[IdleSession] = []

        async def on_warning(session: IdleSession) -> None:
            warned.append(session)

        async with _core(tmp_path, clock, on_warning=on_warning) as core:
            await core.update_session("+525555", "REFRIGERADOR_ACTIVO", {"a": 1}, "USER", "start", 0)
            clock.advance(minutes=26)

            assert await core.reaper.warn_idle(25) == 1
            assert await core.reaper.warn_idle(25) == 0
            await core.tasks.drain()
            assert [session.owner_id for session in warned] == ["+525555"]
            assert (await core.get_session("+525555")).warning_sent is True

            await core.record_activity("+525555")
            assert (await core.get_session("+525555")).warning_sent is False
            clock.advance(minutes=26)
            assert await core.reaper.warn_idle(25) == 1

            # A warned session is still closed once it crosses the timeout.
            clock.advance(minutes=5)
            assert await core.sweep_expired_sessions(30) == 1

    asyncio.run(scenario())


class _FlakyController:
    def __init__(self) -> None:
        self.attempted: list[str] = []

    async def update(self, owner_id, *args, **kwargs):  # type: ignore[no-untyped-def]
        self.attempted.append(owner_id)
        if owner_id == "+520001":
            raise TransientStoreError("update_session", 3)
        return 1


def test_transient_failure_on_one_session_does_not_stop_sweep(tmp_path: Path) -> None:
    async def scenario() -> None:
        clock = FrozenClock()
        async with _core(tmp_path, clock) as core:
            rows = [
                {"owner_id": "+520001", "state": "VEHICULO_ACTIVO", "version": 1, "last_activity": clock.now()},
                {"owner_id": "+520002", "state": "VEHICULO_ACTIVO", "version": 1, "last_activity": clock.now()},
            ]
            controller = _FlakyController()
            reaper = InactivityReaper(
                _StaleScanBackend(core.backend, rows),
                core.store,
                controller,  # type: ignore[arg-type]
                core.reaper.executor,
                core.tasks,
                core.health,
            )
            assert await reaper.sweep(30) == 1
            assert controller.attempted == ["+520001", "+520002"]
            assert core.health.sweep_failures == 1

    asyncio.run(scenario())


@pytest.mark.parametrize("minutes", [0, -5])
def test_non_positive_threshold_is_rejected(tmp_path: Path, minutes: int) -> None:
    core = _core(tmp_path, FrozenClock())
    with pytest.raises(ValueError):
        asyncio.run(core.reaper.sweep(minutes))
