from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "Credential",
    "CredentialPool",
    "PoolStats",
    "RecoveryPolicy",
    "mask_secret",
    "random_recovery",
]

DEFAULT_HEALTH_CHECK_INTERVAL = 60.0
DEFAULT_RECOVERY_PROBABILITY = 0.3


@dataclass
class Credential:
    """
    API key registered with a ``CredentialPool``.

    Instances handed out by the pool are copies; mutating them does not change
    pool state.
    """

    id: str
    secret: str
    display_name: str
    healthy: bool = True
    in_use: bool = False
    total_uses: int = 0
    last_used_at: Optional[datetime] = None


@dataclass(frozen=True)
class PoolStats:
    total: int
    healthy: int
    unhealthy: int
    in_use: int
    available: int


RecoveryPolicy = Callable[[Credential], bool]


def mask_secret(secret: str) -> str:
    if len(secret) <= 8:
        return secret
    return f"{secret[:4]}...{secret[-4:]}"


def random_recovery(probability: float = DEFAULT_RECOVERY_PROBABILITY) -> RecoveryPolicy:
    """Recovery policy restoring each unhealthy credential with a fixed chance."""

    def _policy(credential: Credential) -> bool:
        return random.random() < probability

    return _policy


class CredentialPool:
    """
    Owns a set of credentials and hands each one to at most one holder at a time.

    Unhealthy credentials are never handed out. On ``acquire`` the pool lazily runs
    a health refresh when more than ``health_check_interval`` seconds have passed
    since the previous one; every unhealthy credential is then offered to the
    recovery policy, which is called outside the pool lock.
    """

    def __init__(
        self,
        *,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        recovery_policy: Optional[RecoveryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.health_check_interval = health_check_interval
        self._recovery_policy = recovery_policy or random_recovery()
        self._clock = clock
        self._last_health_check: Optional[float] = None
        self._credentials: List[Credential] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    def add(self, secret: str) -> Credential:
        credential = Credential(
            id=f"key_{uuid.uuid4().hex[:12]}",
            secret=secret,
            display_name=mask_secret(secret),
        )
        with self._lock:
            self._credentials.append(credential)
        logger.debug("Registered credential %s (%s).", credential.id, credential.display_name)
        return replace(credential)

    def add_many(self, secrets: Iterable[str]) -> List[Credential]:
        return [self.add(secret.strip()) for secret in secrets if secret and secret.strip()]

    def acquire(self) -> Optional[Credential]:
        self._refresh_health_if_due()
        with self._lock:
            for credential in self._credentials:
                if credential.healthy and not credential.in_use:
                    credential.in_use = True
                    return replace(credential)
        return None

    def release(self, credential_id: str, succeeded: bool = True) -> None:
        with self._lock:
            credential = self._find(credential_id)
            if credential is None:
                logger.warning("Release requested for unknown credential %s.", credential_id)
                return
            credential.in_use = False
            if succeeded:
                credential.total_uses += 1
                credential.last_used_at = datetime.now(timezone.utc)

    def mark_unhealthy(self, credential_id: str) -> None:
        with self._lock:
            credential = self._find(credential_id)
            if credential is None:
                logger.warning("Cannot mark unknown credential %s as unhealthy.", credential_id)
                return
            credential.healthy = False
            credential.in_use = False
        logger.info("Credential %s marked unhealthy.", credential.display_name)

    def healthy_count(self) -> int:
        with self._lock:
            return sum(1 for credential in self._credentials if credential.healthy)

    def available_count(self) -> int:
        with self._lock:
            return sum(
                1 for credential in self._credentials if credential.healthy and not credential.in_use
            )

    def stats(self) -> PoolStats:
        with self._lock:
            total = len(self._credentials)
            healthy = sum(1 for credential in self._credentials if credential.healthy)
            in_use = sum(1 for credential in self._credentials if credential.in_use)
        return PoolStats(
            total=total,
            healthy=healthy,
            unhealthy=total - healthy,
            in_use=in_use,
            available=healthy - in_use,
        )

    def snapshot(self) -> List[Credential]:
        with self._lock:
            return [replace(credential) for credential in self._credentials]

    def rotate(self) -> None:
        """Move the first credential to the end so a different key is tried first."""
        with self._lock:
            if self._credentials:
                self._credentials.append(self._credentials.pop(0))

    def reset(self) -> None:
        with self._lock:
            self._credentials = []
            self._last_health_check = None

    def _find(self, credential_id: str) -> Optional[Credential]:
        for credential in self._credentials:
            if credential.id == credential_id:
                return credential
        return None

    def _refresh_health_if_due(self) -> None:
        with self._lock:
            now = self._clock()
            if (
                self._last_health_check is not None
                and now - self._last_health_check <= self.health_check_interval
            ):
                return
            self._last_health_check = now
            candidates = [
                replace(credential) for credential in self._credentials if not credential.healthy
            ]

        # Recovery policies run with the lock released.
        recovered = [candidate.id for candidate in candidates if self._offer_recovery(candidate)]

        with self._lock:
            for credential_id in recovered:
                credential = self._find(credential_id)
                if credential is not None and not credential.healthy:
                    credential.healthy = True
                    logger.info("Credential %s recovered.", credential.display_name)
        logger.debug(
            "Health refresh checked %d unhealthy credentials, %d recovered.",
            len(candidates),
            len(recovered),
        )

    def _offer_recovery(self, credential: Credential) -> bool:
        try:
            return bool(self._recovery_policy(credential))
        except Exception:
            logger.exception("Recovery policy failed for credential %s.", credential.display_name)
            return False
