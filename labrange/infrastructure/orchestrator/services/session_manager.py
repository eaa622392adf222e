"""
Session State Machine - Lab session lifecycle orchestration

Handles:
- Admission (one active session per user, global concurrency cap)
- Background provisioning with rollback on failure
- Per-session expiry timers plus a periodic sweep as safety net
- Flag submission
- Idempotent, serialised teardown
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from labrange.core.config import Settings
from labrange.core.exceptions import (
    CapacityError,
    ConflictError,
    LimitError,
    NotFoundError,
    OwnershipError,
    SessionExpiredError,
    ValidationError,
)
from labrange.domain.labs.entities import FLAG_NAMES, LabTemplate, NetworkMode
from labrange.domain.sessions.entities import (
    ConnectionInfo,
    FlagState,
    InjectionStatus,
    Session,
    SessionStatus,
    StopReason,
    utcnow,
)

from .. import metrics
from ..models import InstanceConfig
from .flag_engine import FlagEngine
from .lab_catalog import LabCatalog
from .notifications import NotificationSink
from .reachability import ReachabilityProbe
from .repository import SessionRepository
from .vm_manager import VMManager

logger = structlog.get_logger(__name__)


@dataclass
class StartSessionResult:
    """Returned by start_session before provisioning has finished."""
    session_id: str
    status: SessionStatus
    expires_at: datetime
    connection_info: Optional[ConnectionInfo]
    estimated_start_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "connection_info": (
                self.connection_info.to_dict(include_private=False) if self.connection_info else None
            ),
            "estimated_start_seconds": self.estimated_start_seconds,
        }


class SessionManager:
    """
    Central manager for lab session lifecycle.

    Every stop path (user, timer, sweep, shutdown) ends in stop_session,
    which is serialised per session and a no-op once the session is terminal.
    """

    def __init__(
        self,
        settings: Settings,
        vm_manager: VMManager,
        flag_engine: FlagEngine,
        lab_catalog: LabCatalog,
        repository: SessionRepository,
        notifications: NotificationSink,
        probe: ReachabilityProbe,
    ):
        self.settings = settings
        self.vm_manager = vm_manager
        self.flag_engine = flag_engine
        self.lab_catalog = lab_catalog
        self.repository = repository
        self.notifications = notifications
        self.probe = probe

        # In-memory tracking for active sessions
        self._sessions: Dict[str, Session] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

        # Background tasks
        self._provision_tasks: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        """Start the periodic cleanup sweep."""
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "Session manager started",
            max_concurrent=self.settings.max_concurrent_sessions,
            sweep_interval=self.settings.session_cleanup_interval_seconds,
        )

    async def shutdown(self) -> None:
        """Stop the sweep and tear down every active session."""
        self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        active = [sid for sid, session in self._sessions.items() if session.is_active()]
        if active:
            logger.info("Stopping active sessions for shutdown", count=len(active))
            results = await asyncio.gather(
                *(self.stop_session(sid, StopReason.SHUTDOWN) for sid in active),
                return_exceptions=True,
            )
            for sid, result in zip(active, results):
                if isinstance(result, Exception):
                    logger.error("Failed to stop session on shutdown", session_id=sid, error=str(result))

        for sid in list(self._timers):
            self._clear_timer(sid)
        logger.info("Session manager stopped")

    def _get_session_lock(self, session_id: str) -> asyncio.Lock:
        """Get or create a lock for a session."""
        if session_id not in self._session_locks:
            self._session_locks[session_id] = asyncio.Lock()
        return self._session_locks[session_id]

    def _drop_session_lock(self, session_id: str) -> None:
        """Forget the lock of a terminal session; late holders only see the terminal status."""
        self._session_locks.pop(session_id, None)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        lab_id: str,
        opts: Optional[Dict[str, Any]] = None,
    ) -> StartSessionResult:
        """
        Admit a new session and start provisioning it in the background.

        Raises:
            NotFoundError: lab unknown, inactive or without a VM template
            ConflictError: user already has a starting or running session
            CapacityError: global concurrency cap reached
        """
        lab = await self.lab_catalog.get_lab(lab_id)
        if lab is None or not lab.is_active:
            raise NotFoundError("Lab not found or inactive", lab_id=lab_id)
        if not lab.template_id:
            raise NotFoundError("Lab has no VM template", lab_id=lab_id)

        # No awaits between the admission checks and the insert below
        active = [s for s in self._sessions.values() if s.is_active()]
        existing = next((s for s in active if s.user_id == user_id), None)
        if existing is not None:
            raise ConflictError(
                "User already has an active session",
                user_id=user_id,
                session_id=existing.session_id,
            )
        if len(active) >= self.settings.max_concurrent_sessions:
            raise CapacityError(
                "Maximum concurrent sessions reached",
                active=len(active),
                limit=self.settings.max_concurrent_sessions,
            )

        now = utcnow()
        session = Session(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            lab_id=lab_id,
            started_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(seconds=self.settings.max_session_duration_seconds),
            metadata=dict(opts or {}),
        )
        self._sessions[session.session_id] = session

        try:
            await self.repository.create(session)
        except Exception:
            self._sessions.pop(session.session_id, None)
            raise

        metrics.sessions_started.inc()
        self._update_gauges()
        logger.info(
            "Session starting",
            session_id=session.session_id,
            user_id=user_id,
            lab_id=lab_id,
            expires_at=session.expires_at.isoformat(),
        )

        self._provision_tasks[session.session_id] = asyncio.create_task(
            self._provision(session, lab)
        )
        await self._notify("session_started", {
            "session_id": session.session_id,
            "user_id": user_id,
            "lab_id": lab_id,
            "lab_name": lab.name,
        })

        return StartSessionResult(
            session_id=session.session_id,
            status=session.status,
            expires_at=session.expires_at,
            connection_info=self.vm_manager.expected_connection_info(session.session_id, self._instance_config(lab)),
            estimated_start_seconds=self.settings.estimated_start_seconds,
        )

    async def _provision(self, session: Session, lab: LabTemplate) -> None:
        """Drive a starting session to running, or to failed with rollback."""
        sid = session.session_id
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            await self.vm_manager.create_instance(lab.template_id, sid, self._instance_config(lab))
            connection_info = await self.vm_manager.start_instance(sid)
            session.connection_info = connection_info

            if connection_info.management is not None:
                await self.probe.wait_until_reachable(
                    connection_info.management.host,
                    connection_info.management.port,
                )

            issued = self.flag_engine.generate_session_flags(sid, session.user_id, lab, session.expires_at)
            session.flags = {
                name: FlagState(value=state.value, points=state.points)
                for name, state in issued.items()
            }

            try:
                injection = await self.flag_engine.inject_flags(sid, connection_info, lab)
                session.injection_status = injection.status
                if injection.warnings:
                    session.metadata["injection_warnings"] = injection.warnings
                if not injection.success:
                    logger.warning(
                        "Flags not delivered, session continues",
                        session_id=sid,
                        error=injection.error,
                    )
            except Exception as e:
                logger.error("Flag injection error, session continues", session_id=sid, error=str(e))
                session.injection_status = InjectionStatus.FAILED

            async with self._get_session_lock(sid):
                if session.status != SessionStatus.STARTING:
                    logger.info("Session left starting during provisioning", session_id=sid, status=session.status.value)
                    self._drop_session_lock(sid)
                    return
                session.transition(SessionStatus.RUNNING)
                self._arm_timer(session)
                await self._persist(session)

            metrics.provisioning_seconds.observe(loop.time() - started)
            logger.info(
                "Session running",
                session_id=sid,
                host=connection_info.host,
                injection_status=session.injection_status.value,
            )
            await self._notify("session_running", {
                "session_id": sid,
                "user_id": session.user_id,
                "lab_id": session.lab_id,
                "connection_info": connection_info.to_dict(include_private=False),
                "expires_at": session.expires_at.isoformat(),
                "injection_status": session.injection_status.value,
            })

        except asyncio.CancelledError:
            logger.info("Provisioning cancelled", session_id=sid)
            raise
        except Exception as e:
            await self._fail(session, e)
        finally:
            if self._provision_tasks.get(sid) is asyncio.current_task():
                del self._provision_tasks[sid]

    def _instance_config(self, lab: LabTemplate) -> InstanceConfig:
        vm_config = lab.vm_config
        credentials = lab.credentials
        return InstanceConfig(
            ram_mb=vm_config.ram_mb or self.settings.default_vm_ram_mb,
            cpus=vm_config.cpus or self.settings.default_vm_cpus,
            network_mode=vm_config.network_mode or NetworkMode(self.settings.default_network_mode),
            username=credentials.username if credentials else self.settings.default_guest_username,
            password=credentials.password if credentials else self.settings.default_guest_password,
        )

    async def _fail(self, session: Session, error: Exception) -> None:
        sid = session.session_id
        async with self._get_session_lock(sid):
            already_terminal = session.is_terminal()
            if not already_terminal:
                session.failure_reason = str(error)
                session.transition(SessionStatus.FAILED)
                await self._persist(session)
        self._drop_session_lock(sid)
        if already_terminal:
            return

        logger.error("Session provisioning failed", session_id=sid, error=str(error))

        try:
            await self.vm_manager.delete_instance(sid)
        except Exception as e:
            logger.error("Rollback after failed provisioning errored", session_id=sid, error=str(e))
        self.flag_engine.remove_session(sid)
        self._clear_timer(sid)
        self._sessions.pop(sid, None)

        metrics.sessions_ended.labels(status=SessionStatus.FAILED.value, reason="provisioning").inc()
        self._update_gauges()
        await self._notify("session_failed", {
            "session_id": sid,
            "user_id": session.user_id,
            "lab_id": session.lab_id,
            "error": str(error),
        })

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_session_info(self, session_id: str) -> Dict[str, Any]:
        """
        Public view of a session, with live VM status while running.

        Raises:
            NotFoundError: session unknown
        """
        session = self._sessions.get(session_id) or await self.repository.get(session_id)
        if session is None:
            raise NotFoundError("Session not found", session_id=session_id)

        info = session.to_public_dict()
        info["extensions_remaining"] = max(0, self.settings.max_session_extensions - session.extensions_used)
        info["time_remaining_seconds"] = 0
        if session.is_active() and session.expires_at:
            info["time_remaining_seconds"] = max(0, int((session.expires_at - utcnow()).total_seconds()))

        info["vm_status"] = None
        if session.status == SessionStatus.RUNNING:
            try:
                info["vm_status"] = await self.vm_manager.get_instance_status(session_id)
            except Exception as e:
                logger.warning("Failed to get VM status", session_id=session_id, error=str(e))
        return info

    async def get_system_status(self) -> Dict[str, Any]:
        active = [s for s in self._sessions.values() if s.is_active()]
        try:
            total_ever = await self.repository.count()
        except Exception as e:
            logger.error("Failed to count sessions", error=str(e))
            total_ever = None
        return {
            "active_count": len(active),
            "running": sum(1 for s in active if s.status == SessionStatus.RUNNING),
            "max_concurrent": self.settings.max_concurrent_sessions,
            "total_ever": total_ever,
            "pending_timers": len(self._timers),
            "provisioning": len(self._provision_tasks),
            "flag_sessions": self.flag_engine.active_sessions(),
        }

    # ------------------------------------------------------------------
    # Extend / activity
    # ------------------------------------------------------------------

    async def extend_session(self, session_id: str, duration_override: Optional[int] = None) -> Dict[str, Any]:
        """
        Push the expiry of a running session.

        Raises:
            NotFoundError: session unknown or not running
            LimitError: no extensions left
        """
        session = await self._load(session_id)
        if session.status != SessionStatus.RUNNING:
            raise NotFoundError("Session is not running", session_id=session_id)

        async with self._get_session_lock(session_id):
            if session.status != SessionStatus.RUNNING:
                raise NotFoundError("Session is not running", session_id=session_id)
            if session.extensions_used >= self.settings.max_session_extensions:
                raise LimitError(
                    "Maximum session extensions reached",
                    session_id=session_id,
                    limit=self.settings.max_session_extensions,
                )

            seconds = duration_override or self.settings.session_extension_seconds
            if seconds <= 0:
                raise ValidationError("Extension must be positive", session_id=session_id)

            session.expires_at = session.expires_at + timedelta(seconds=seconds)
            session.extensions_used += 1
            self._arm_timer(session)
            self.flag_engine.update_expiry(session_id, session.expires_at)
            await self._persist(session)

        remaining = self.settings.max_session_extensions - session.extensions_used
        logger.info(
            "Session extended",
            session_id=session_id,
            expires_at=session.expires_at.isoformat(),
            extensions_used=session.extensions_used,
        )
        await self._notify("session_extended", {
            "session_id": session_id,
            "user_id": session.user_id,
            "expires_at": session.expires_at.isoformat(),
            "extensions_remaining": remaining,
        })
        return {
            "session_id": session_id,
            "expires_at": session.expires_at.isoformat(),
            "extensions_used": session.extensions_used,
            "extensions_remaining": remaining,
        }

    async def update_activity(self, session_id: str, kind: str = "general") -> bool:
        """Refresh the idle clock of a running session."""
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.RUNNING:
            return False
        session.touch()
        logger.debug("Session activity", session_id=session_id, kind=kind)
        await self._persist(session)
        return True

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    async def submit_flag(self, session_id: str, flag_name: str, value: str, user_id: str) -> Dict[str, Any]:
        """
        Check a submitted flag.

        A flag that was already solved yields no points and no error.

        Raises:
            NotFoundError: session or flag unknown
            OwnershipError: session belongs to another user
            SessionExpiredError: session not running or past its expiry
        """
        session = await self._load(session_id)
        if session.user_id != user_id:
            raise OwnershipError("Session belongs to another user", session_id=session_id)
        if flag_name not in FLAG_NAMES:
            raise NotFoundError(f"Unknown flag: {flag_name}", session_id=session_id)
        if not value or not value.strip():
            raise ValidationError("Flag value is required", session_id=session_id)
        if session.is_terminal():
            raise SessionExpiredError("Session is not running", session_id=session_id)

        async with self._get_session_lock(session_id):
            session.touch()
            if session.status != SessionStatus.RUNNING or session.is_expired():
                raise SessionExpiredError("Session is not running", session_id=session_id)

            state = session.flags.get(flag_name)
            if state is None:
                raise NotFoundError(f"Flag not defined for this lab: {flag_name}", session_id=session_id)

            if state.correct:
                result = {
                    "success": False,
                    "points": 0,
                    "flag_name": flag_name,
                    "already_submitted": True,
                    "message": "Flag already submitted",
                }
            else:
                validation = self.flag_engine.validate_flag(session_id, value, flag_name)
                state.submitted = True
                state.submitted_at = utcnow()
                state.correct = validation.valid
                result = {
                    "success": validation.valid,
                    "points": validation.points,
                    "flag_name": flag_name,
                    "already_submitted": False,
                    "message": validation.message,
                }
            await self._persist(session)

        outcome = "duplicate" if result["already_submitted"] else ("correct" if result["success"] else "incorrect")
        metrics.flag_submissions.labels(flag=flag_name, outcome=outcome).inc()
        logger.info(
            "Flag submitted",
            session_id=session_id,
            user_id=user_id,
            flag=flag_name,
            outcome=outcome,
        )
        await self._notify("flag_result", {
            "session_id": session_id,
            "user_id": user_id,
            "lab_id": session.lab_id,
            "flag_name": flag_name,
            "success": result["success"],
            "points": result["points"],
        })
        return result

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_session(
        self,
        session_id: str,
        reason: StopReason = StopReason.USER_REQUESTED,
    ) -> Dict[str, Any]:
        """
        Stop a session and release everything it holds.

        Idempotent: stopping a terminal session returns its status unchanged.

        Raises:
            NotFoundError: session unknown
        """
        session = await self._load(session_id)
        if session.is_terminal():
            return _already_stopped(session)

        try:
            async with self._get_session_lock(session_id):
                if session.is_terminal():
                    return _already_stopped(session)

                was_starting = session.status == SessionStatus.STARTING
                session.stop_reason = reason
                session.transition(reason.terminal_status)
                logger.info(
                    "Stopping session",
                    session_id=session_id,
                    reason=reason.value,
                    status=session.status.value,
                )

                if was_starting:
                    await self._cancel_provisioning(session_id)

                try:
                    await self.vm_manager.delete_instance(session_id)
                except Exception as e:
                    logger.error("VM teardown failed", session_id=session_id, error=str(e))

                self._clear_timer(session_id)
                self.flag_engine.remove_session(session_id)
                await self._persist(session)
                self._sessions.pop(session_id, None)
        finally:
            if session.is_terminal():
                self._drop_session_lock(session_id)

        metrics.sessions_ended.labels(status=session.status.value, reason=reason.value).inc()
        self._update_gauges()
        await self._notify("session_stopped", {
            "session_id": session_id,
            "user_id": session.user_id,
            "lab_id": session.lab_id,
            "reason": reason.value,
            "status": session.status.value,
            "duration_seconds": session.duration_seconds,
        })
        return {
            "session_id": session_id,
            "status": session.status.value,
            "stop_reason": reason.value,
            "ended_at": session.ended_at.isoformat() if session.ended_at else None,
            "duration_seconds": session.duration_seconds,
            "already_stopped": False,
        }

    async def stop_user_sessions(
        self,
        user_id: str,
        reason: StopReason = StopReason.ADMIN_ACTION,
    ) -> List[Dict[str, Any]]:
        """Stop every active session of a user."""
        session_ids = {
            sid for sid, session in self._sessions.items()
            if session.user_id == user_id and session.is_active()
        }
        try:
            session_ids.update(s.session_id for s in await self.repository.list_active() if s.user_id == user_id)
        except Exception as e:
            logger.error("Failed to list persisted sessions", user_id=user_id, error=str(e))

        results = []
        for sid in sorted(session_ids):
            try:
                results.append(await self.stop_session(sid, reason))
            except Exception as e:
                logger.error("Failed to stop user session", session_id=sid, user_id=user_id, error=str(e))
                results.append({"session_id": sid, "error": str(e)})
        return results

    async def _cancel_provisioning(self, session_id: str) -> None:
        task = self._provision_tasks.pop(session_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.wait({task})
        logger.info("Provisioning task cancelled", session_id=session_id)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _arm_timer(self, session: Session) -> None:
        self._clear_timer(session.session_id)
        delay = max(0.0, (session.expires_at - utcnow()).total_seconds())
        self._timers[session.session_id] = asyncio.create_task(
            self._expire_after(session.session_id, delay)
        )

    def _clear_timer(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("Session time limit reached", session_id=session_id)
        try:
            await self.stop_session(session_id, StopReason.EXPIRED)
        except Exception as e:
            logger.error("Failed to expire session", session_id=session_id, error=str(e))

    async def run_cleanup_sweep(self) -> Dict[str, int]:
        """
        Stop sessions past their expiry or idle too long.

        Also covers active sessions that only exist in the repository, whose
        timers were lost in a restart.
        """
        now = utcnow()
        candidates: Dict[str, Session] = {
            sid: session for sid, session in self._sessions.items() if session.is_active()
        }
        try:
            for session in await self.repository.list_active():
                candidates.setdefault(session.session_id, session)
        except Exception as e:
            logger.error("Failed to list persisted sessions", error=str(e))

        stopped = {StopReason.EXPIRED: 0, StopReason.INACTIVE: 0}
        for sid, session in candidates.items():
            if session.is_expired(now):
                reason = StopReason.EXPIRED
            elif session.status == SessionStatus.RUNNING and session.is_idle(
                self.settings.session_inactivity_timeout_seconds, now
            ):
                reason = StopReason.INACTIVE
            else:
                continue

            try:
                outcome = await self.stop_session(sid, reason)
            except Exception as e:
                logger.error("Sweep failed to stop session", session_id=sid, error=str(e))
                continue
            if not outcome.get("already_stopped"):
                stopped[reason] += 1

        self.flag_engine.cleanup_expired(now)

        if any(stopped.values()):
            logger.info(
                "Cleanup sweep finished",
                expired=stopped[StopReason.EXPIRED],
                inactive=stopped[StopReason.INACTIVE],
            )
        return {
            "expired": stopped[StopReason.EXPIRED],
            "inactive": stopped[StopReason.INACTIVE],
        }

    async def _cleanup_loop(self) -> None:
        """Background loop running the cleanup sweep."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.session_cleanup_interval_seconds)
                await self.run_cleanup_sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in cleanup loop", error=str(e))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, session_id: str) -> Session:
        """
        Get a session, adopting active ones found only in the repository.

        Raises:
            NotFoundError: session unknown
        """
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        loaded = await self.repository.get(session_id)
        if loaded is None:
            raise NotFoundError("Session not found", session_id=session_id)
        if not loaded.is_active():
            return loaded

        session = self._sessions.setdefault(session_id, loaded)
        if session is loaded:
            logger.info("Adopted persisted session", session_id=session_id, status=loaded.status.value)
            self.vm_manager.adopt_instance(session_id, loaded.connection_info)
            if loaded.flags:
                self.flag_engine.restore_session_flags(
                    session_id, loaded.user_id, loaded.lab_id, loaded.flags, loaded.expires_at
                )
            if loaded.status == SessionStatus.RUNNING:
                self._arm_timer(loaded)
            self._update_gauges()
        return session

    async def _persist(self, session: Session) -> None:
        try:
            await self.repository.update(session)
        except Exception as e:
            logger.error("Failed to persist session", session_id=session.session_id, error=str(e))

    async def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                self.notifications.publish(event, payload),
                timeout=self.settings.notification_timeout_seconds,
            )
        except Exception as e:
            logger.warning("Notification failed", notification=event, error=str(e))

    def _update_gauges(self) -> None:
        metrics.sessions_active.set(sum(1 for s in self._sessions.values() if s.is_active()))


def _already_stopped(session: Session) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "status": session.status.value,
        "already_stopped": True,
    }
