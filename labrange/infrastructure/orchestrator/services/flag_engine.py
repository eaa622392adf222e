"""
Flag Injection Engine - per-session flag generation, delivery and validation

Generated flags are HMAC-SHA256 digests keyed with the server secret, so the
same lab never hands two sessions the same value. Delivery writes the values
into the running guest over SSH; guests are slow to boot and often ancient,
so the connection is retried and a broad algorithm set is offered.
"""

import hashlib
import hmac
import posixpath
import secrets
import shlex
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog

from labrange.core.config import Settings
from labrange.core.exceptions import (
    InjectionError,
    NotFoundError,
    RetryExhaustedError,
    SessionExpiredError,
)
from labrange.domain.labs.entities import FlagMode, LabTemplate
from labrange.domain.sessions.entities import (
    ConnectionInfo,
    FlagState,
    InjectionStatus,
    utcnow,
)

from .. import metrics
from ..models import InjectionResult, ValidationResult
from .remote_shell import LEGACY_COMPATIBLE, AlgorithmSet, RemoteShell
from .retry import retry_async

logger = structlog.get_logger(__name__)

USER_FLAG_MODE = "644"
ROOT_FLAG_MODE = "600"


@dataclass
class SessionFlags:
    """Flag values issued to one session."""
    session_id: str
    user_id: str
    lab_id: str
    flags: Dict[str, FlagState]
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


class FlagEngine:
    """Issues, delivers and checks session flags."""

    def __init__(
        self,
        settings: Settings,
        remote_shell: RemoteShell,
        algorithms: AlgorithmSet = LEGACY_COMPATIBLE,
    ):
        self.settings = settings
        self.remote_shell = remote_shell
        self.algorithms = algorithms
        self._secret = settings.secret_key.encode()
        self._sessions: Dict[str, SessionFlags] = {}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_flag(self, session_id: str, user_id: str, flag_name: str, lab: LabTemplate) -> str:
        """
        Generate a unique flag value.

        Returns:
            The flag string, e.g. "FLAG{user_basicpentest_0123...}"
        """
        input_data = f"{session_id}:{user_id}:{time.time_ns()}:{flag_name}:{secrets.token_hex(8)}"
        digest = hmac.new(self._secret, input_data.encode(), hashlib.sha256).hexdigest()
        digest = digest[: self.settings.flag_digest_length]
        return f"{self.settings.flag_prefix}{flag_name}_{lab.slug}_{digest}{self.settings.flag_suffix}"

    def generate_session_flags(
        self,
        session_id: str,
        user_id: str,
        lab: LabTemplate,
        expires_at: datetime,
    ) -> Dict[str, FlagState]:
        """Issue every flag the lab defines and remember them for validation."""
        flags: Dict[str, FlagState] = {}
        for name, spec in lab.flags.items():
            if spec.mode == FlagMode.STATIC:
                value = spec.value
            else:
                value = self.generate_flag(session_id, user_id, name, lab)
            flags[name] = FlagState(value=value, points=spec.points)

        self._sessions[session_id] = SessionFlags(
            session_id=session_id,
            user_id=user_id,
            lab_id=lab.id,
            flags=flags,
            expires_at=expires_at,
        )
        logger.info(
            "Session flags generated",
            session_id=session_id,
            lab_id=lab.id,
            flags=sorted(flags),
        )
        return flags

    def restore_session_flags(
        self,
        session_id: str,
        user_id: str,
        lab_id: str,
        flags: Dict[str, FlagState],
        expires_at: datetime,
    ) -> None:
        """Re-register flags of a session recovered from persistence."""
        self._sessions[session_id] = SessionFlags(
            session_id=session_id,
            user_id=user_id,
            lab_id=lab_id,
            flags={name: FlagState(value=state.value, points=state.points) for name, state in flags.items()},
            expires_at=expires_at,
        )
        logger.info("Session flags restored", session_id=session_id, flags=sorted(flags))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def inject_flags(
        self,
        session_id: str,
        connection_info: Optional[ConnectionInfo],
        lab: LabTemplate,
    ) -> InjectionResult:
        """
        Write the session's generated flags into the guest.

        Never raises for an unreachable guest; the outcome is in the result.

        Raises:
            NotFoundError: no flags were generated for the session
        """
        record = self._require(session_id)
        if not lab.requires_injection():
            logger.info("Lab uses static flags only, nothing to deliver", session_id=session_id)
            return self._finish(session_id, InjectionResult(status=InjectionStatus.NOT_REQUIRED))

        pending = {
            name: state
            for name, state in record.flags.items()
            if lab.flags[name].mode == FlagMode.GENERATED
        }

        if not pending:
            logger.info("No flags need delivery", session_id=session_id)
            return self._finish(session_id, InjectionResult(status=InjectionStatus.NOT_REQUIRED))

        if connection_info is None or connection_info.management is None:
            logger.warning("No management channel to guest, skipping flag delivery", session_id=session_id)
            return self._finish(
                session_id,
                InjectionResult(
                    status=InjectionStatus.FAILED,
                    delivered={name: False for name in pending},
                    error="No management channel to guest",
                ),
            )

        username = connection_info.username or self.settings.default_guest_username
        password = connection_info.password
        if password is None:
            password = self.settings.default_guest_password

        result = InjectionResult(status=InjectionStatus.PENDING)
        try:
            handle, result.attempts = await self._connect(connection_info, username, password)
        except InjectionError as e:
            logger.warning(
                "Guest unreachable, flags not delivered",
                session_id=session_id,
                error=e.message,
                attempts=e.context.get("attempts"),
            )
            result.status = InjectionStatus.FAILED
            result.delivered = {name: False for name in pending}
            result.attempts = e.context.get("attempts", 0)
            result.error = e.message
            return self._finish(session_id, result)

        try:
            for name, state in pending.items():
                path, errors = await self._deliver(
                    handle,
                    flag_name=name,
                    value=state.value,
                    locations=lab.flag_locations(name),
                    username=username,
                    password=password,
                )
                result.delivered[name] = path is not None
                if path is not None:
                    result.locations[name] = path
                result.errors.extend(errors)
        finally:
            try:
                await self.remote_shell.close(handle)
            except Exception as e:
                logger.debug("Error closing guest connection", session_id=session_id, error=str(e))

        delivered = sum(result.delivered.values())
        if delivered == len(pending):
            result.status = InjectionStatus.COMPLETED
        elif delivered:
            result.status = InjectionStatus.PARTIAL
        else:
            result.status = InjectionStatus.FAILED
            result.error = "No flag could be written to the guest"
        return self._finish(session_id, result)

    async def _connect(
        self,
        connection_info: ConnectionInfo,
        username: str,
        password: Optional[str],
    ) -> Tuple[Any, int]:
        endpoint = connection_info.management

        async def attempt() -> Any:
            return await self.remote_shell.connect(
                endpoint.host,
                endpoint.port,
                username,
                password,
                self.algorithms,
            )

        try:
            return await retry_async(
                attempt,
                max_attempts=self.settings.injection_max_attempts,
                delay=self.settings.injection_retry_delay_seconds,
                budget=self.settings.injection_total_budget_seconds,
                description=f"SSH connect to {endpoint.host}:{endpoint.port}",
            )
        except RetryExhaustedError as e:
            raise InjectionError(
                f"Could not connect to guest: {e.last_error}",
                attempts=e.attempts,
                host=endpoint.host,
                port=endpoint.port,
            ) from e

    async def _deliver(
        self,
        handle: Any,
        flag_name: str,
        value: str,
        locations: List[str],
        username: str,
        password: Optional[str],
    ) -> Tuple[Optional[str], List[str]]:
        """Try each location in order; the first successful write wins."""
        errors: List[str] = []
        file_mode = ROOT_FLAG_MODE if flag_name == "root" else USER_FLAG_MODE

        for path in locations:
            script = _write_script(path, value, file_mode)
            attempts: List[Tuple[str, Optional[str]]] = []
            if username != "root" and _is_privileged(flag_name, path):
                if password:
                    attempts.append((f"sudo -S -p '' sh -c {shlex.quote(script)}", password + "\n"))
                else:
                    attempts.append((f"sudo -n sh -c {shlex.quote(script)}", None))
            attempts.append((f"sh -c {shlex.quote(script)}", None))

            for command, stdin in attempts:
                try:
                    outcome = await self.remote_shell.exec(handle, command, input=stdin)
                except Exception as e:
                    errors.append(f"{flag_name}: {path}: {e}")
                    continue
                if outcome.ok:
                    logger.info("Flag written", flag=flag_name, path=path)
                    return path, errors
                errors.append(f"{flag_name}: {path}: {outcome.stderr.strip() or f'exit {outcome.exit_status}'}")

        logger.warning("Flag could not be written", flag=flag_name, locations=locations)
        return None, errors

    def _finish(self, session_id: str, result: InjectionResult) -> InjectionResult:
        metrics.flag_injections.labels(status=result.status.value).inc()
        logger.info(
            "Flag injection finished",
            session_id=session_id,
            status=result.status.value,
            attempts=result.attempts,
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Validation and bookkeeping
    # ------------------------------------------------------------------

    def validate_flag(self, session_id: str, value: str, flag_name: str) -> ValidationResult:
        """
        Check a submitted value against the issued flag.

        Raises:
            NotFoundError: session or flag unknown
            SessionExpiredError: session flags have expired
        """
        record = self._require(session_id)
        state = record.flags.get(flag_name)
        if state is None:
            raise NotFoundError(f"Unknown flag: {flag_name}", session_id=session_id)
        if utcnow() > record.expires_at:
            raise SessionExpiredError("Session has expired", session_id=session_id)

        valid = hmac.compare_digest(value.strip().encode(), state.value.encode())
        return ValidationResult(
            valid=valid,
            points=state.points if valid else 0,
            flag_name=flag_name,
            message="Correct flag" if valid else "Incorrect flag",
        )

    def get_flag_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Flag metadata for a session, without the values."""
        record = self._sessions.get(session_id)
        if record is None:
            return None
        return {
            "session_id": record.session_id,
            "lab_id": record.lab_id,
            "expires_at": record.expires_at.isoformat(),
            "flags": {
                name: {"points": state.points}
                for name, state in record.flags.items()
            },
        }

    def update_expiry(self, session_id: str, expires_at: datetime) -> bool:
        record = self._sessions.get(session_id)
        if record is None:
            return False
        record.expires_at = expires_at
        return True

    def remove_session(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.debug("Session flags removed", session_id=session_id)
        return removed

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Drop flag records past their expiry."""
        now = now or utcnow()
        expired = [sid for sid, record in self._sessions.items() if now > record.expires_at]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info("Expired session flags cleaned up", count=len(expired))
        return len(expired)

    def active_sessions(self) -> int:
        return len(self._sessions)

    def _require(self, session_id: str) -> SessionFlags:
        record = self._sessions.get(session_id)
        if record is None:
            raise NotFoundError("No flags issued for session", session_id=session_id)
        return record


def _is_privileged(flag_name: str, path: str) -> bool:
    return flag_name == "root" or not path.startswith("/home/")


def _write_script(path: str, value: str, file_mode: str) -> str:
    directory = posixpath.dirname(path) or "/"
    quoted = shlex.quote(path)
    return (
        f"mkdir -p {shlex.quote(directory)} && "
        f"printf '%s\\n' {shlex.quote(value)} > {quoted} && "
        f"chmod {file_mode} {quoted}"
    )
