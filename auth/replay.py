"""
auth/replay.py -- Nonce uniqueness and timestamp freshness checks.

The guard runs before any signature check. A stale or replayed request must
not reach the signature path, and recording the nonce is a side effect that
only happens once the request has passed both checks.

Order of checks:
  1. Timestamp. |now - timestamp| > TIMEOUT_DELTA is BAD_TIMESTAMP no matter
     what the nonce is.
  2. Nonce, only when a token scope is bound. Consumer-only calls (request
     token issuance) have no token context to scope a nonce to.

The nonce check and the nonce insert are one operation: the store's
insert_nonce_if_absent() relies on a UNIQUE constraint, so two concurrent
calls presenting the same nonce cannot both pass.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from auth.models import Consumer, OAuthState, TokenScope
from auth.store import CredentialStore
from core.config import get_settings

logger = logging.getLogger("handshake.replay")


class ReplayGuard:
    """Decide PASS/FAIL for a call's nonce and timestamp, recording the nonce on PASS.

    Usage:
        guard = ReplayGuard(store)
        state = guard.check(consumer, nonce, timestamp, scope=(TokenScope.ACCESS, token_id))
    """

    def __init__(
        self,
        store: CredentialStore,
        timeout_delta: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.timeout_delta = timeout_delta if timeout_delta is not None else get_settings().timeout_delta
        self._clock = clock

    def check_timestamp(self, timestamp: str | int | float | None) -> OAuthState:
        try:
            submitted = int(timestamp)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            logger.info("Rejected call with unparseable timestamp %r", timestamp)
            return OAuthState.BAD_TIMESTAMP

        # Integer arithmetic: huge submitted values must not overflow a float.
        drift = int(self._clock()) - submitted
        if abs(drift) > self.timeout_delta:
            if drift < 0:
                # Usually a client clock or timezone problem, not an attack.
                logger.info("Timestamp %d is %ds in the future", submitted, -drift)
            logger.info("Timestamp %d is outside the %ds window", submitted, self.timeout_delta)
            return OAuthState.BAD_TIMESTAMP
        return OAuthState.OK

    def check(
        self,
        consumer: Consumer,
        nonce: str | None,
        timestamp: str | int | float | None,
        scope: tuple[TokenScope, int] | None = None,
    ) -> OAuthState:
        state = self.check_timestamp(timestamp)
        if state is not OAuthState.OK:
            return state

        if scope is None:
            return OAuthState.OK

        if not nonce:
            logger.info("Consumer %s sent a token-scoped call without a nonce", consumer.consumer_key)
            return OAuthState.BAD_NONCE

        token_scope, token_id = scope
        if not self.store.insert_nonce_if_absent(nonce, consumer.id, token_scope, token_id):
            logger.warning(
                "Replayed nonce from consumer %s on %s token %d",
                consumer.consumer_key,
                token_scope.value,
                token_id,
            )
            return OAuthState.BAD_NONCE
        return OAuthState.OK
