"""Session resolution.

Precedence: explicit name > ISO_SESSION override > a fresh ephemeral id.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import socket

from iso_env.config import RuntimeSettings
from iso_env.errors import ConfigurationError
from iso_env.types import LABEL_EPHEMERAL, LABEL_OWNER_HOST, LABEL_OWNER_PID, Session

logger = logging.getLogger(__name__)

EPHEMERAL_PREFIX = "eph-"

_VALID_SESSION = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def new_ephemeral_id() -> str:
    """Random session id: prefix plus the URL-safe encoding of 8 random bytes."""
    return EPHEMERAL_PREFIX + secrets.token_urlsafe(8)


def resolve_session(explicit: str | None, settings: RuntimeSettings) -> Session:
    """Pick the session for one invocation.

    Raises:
        ConfigurationError: If a named session is not a valid resource-name fragment.
    """
    name = explicit or settings.session_override
    if name:
        if not _VALID_SESSION.match(name):
            raise ConfigurationError(f"Invalid session name {name!r}")
        return Session(id=name, ephemeral=False)

    session = Session(id=new_ephemeral_id(), ephemeral=True)
    logger.debug(f"Using ephemeral session {session.id}")
    return session


def ephemeral_labels(session: Session) -> dict[str, str]:
    """Labels that let the startup sweep find a session's containers once its owner dies."""
    if not session.ephemeral:
        return {LABEL_EPHEMERAL: "false"}
    return {
        LABEL_EPHEMERAL: "true",
        LABEL_OWNER_PID: str(os.getpid()),
        LABEL_OWNER_HOST: socket.gethostname(),
    }
