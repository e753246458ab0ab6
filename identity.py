"""
Identity collaborator: verifies Telegram Mini App init data.

Clients send the ``initData`` string Telegram hands to the Mini App in the
``Authorization: tma <initData>`` header. The data is signed by Telegram
with a key derived from the bot token, so a valid signature proves which
Telegram user is calling. The escrow engine only ever trusts the user id
returned by ``verify``.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Callable, Dict, Optional, Any
from urllib.parse import parse_qsl, urlencode

from escrow_errors import Unauthenticated

logger = logging.getLogger(__name__)


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def _data_check_string(fields: Dict[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def sign_init_data(
    bot_token: str,
    user: Dict[str, Any],
    auth_date: Optional[int] = None,
    **extra: str
) -> str:
    """
    Produce an init data string signed the way Telegram signs it.

    Used for local development and tests.
    """
    fields = {
        "auth_date": str(int(auth_date if auth_date is not None else time.time())),
        "user": json.dumps(user, separators=(",", ":")),
        **extra,
    }
    fields["hash"] = hmac.new(
        _secret_key(bot_token), _data_check_string(fields).encode(), hashlib.sha256
    ).hexdigest()
    return urlencode(fields)


class TelegramIdentityVerifier:
    """
    Verifier for Telegram Mini App init data.

    Attributes:
        max_age_seconds: Maximum age of ``auth_date`` accepted
    """

    def __init__(
        self,
        bot_token: str,
        max_age_seconds: int = 86400,
        clock: Callable[[], float] = time.time
    ):
        self._secret = _secret_key(bot_token)
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def verify(self, init_data: Optional[str]) -> str:
        """
        Validate init data and return the caller's Telegram user id.

        Args:
            init_data: Raw query-string init data

        Returns:
            The verified user id as a string

        Raises:
            Unauthenticated: If the data is missing, tampered with or stale
        """
        if not init_data:
            raise Unauthenticated("missing credentials")

        fields = dict(parse_qsl(init_data, keep_blank_values=True))
        received_hash = fields.pop("hash", None)
        if not received_hash:
            raise Unauthenticated("init data is not signed")

        expected = hmac.new(
            self._secret, _data_check_string(fields).encode(), hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected, received_hash):
            logger.warning("Rejected init data with invalid signature")
            raise Unauthenticated("invalid init data signature")

        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError:
            raise Unauthenticated("init data has no valid auth_date")

        if self._clock() - auth_date > self.max_age_seconds:
            raise Unauthenticated("init data has expired")

        try:
            user = json.loads(fields["user"])
            user_id = user["id"]
        except (KeyError, TypeError, ValueError):
            raise Unauthenticated("init data has no user")

        return str(user_id)
