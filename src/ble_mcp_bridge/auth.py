"""Shared-secret authentication gate."""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from .connection import Connection
from .const import AUTH_OK_TYPE, MessageType
from .envelope import Envelope, error_envelope, make_envelope

logger = logging.getLogger(__name__)


class AuthGate:
    """Decides whether an envelope may reach the dispatcher."""

    def __init__(self, token: Optional[str] = None) -> None:
        """Require ``token`` from every connection; ``None`` disables auth."""
        self._token = token or None

    @property
    def required(self) -> bool:
        """Whether a shared secret is configured."""
        return self._token is not None

    def initial_state(self) -> bool:
        """Authentication flag for a freshly accepted connection."""
        return not self.required

    def admit(self, connection: Connection, envelope: Envelope) -> bool:
        """Return ``True`` when ``envelope`` should be dispatched.

        Handles the ``mcp/auth`` exchange itself and answers it directly, so a
        ``False`` return means a reply has already been queued.
        """
        is_auth = envelope.type == MessageType.AUTH.value

        if connection.authenticated:
            if is_auth:
                connection.send(
                    make_envelope(
                        AUTH_OK_TYPE, {"msg": "authenticated"}, envelope.id
                    )
                )
                return False
            return True

        if not is_auth:
            connection.send(
                error_envelope("authentication_required", envelope.id)
            )
            return False

        token = envelope.payload.get("token")
        if not isinstance(token, str) or not secrets.compare_digest(
            token.encode("utf-8"), self._token.encode("utf-8")
        ):
            logger.warning("%r: invalid authentication token", connection)
            connection.send(error_envelope("invalid_token", envelope.id))
            return False

        connection.authenticated = True
        logger.info("%r: authenticated", connection)
        connection.send(
            make_envelope(AUTH_OK_TYPE, {"msg": "authenticated"}, envelope.id)
        )
        return False
