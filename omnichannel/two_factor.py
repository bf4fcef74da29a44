from __future__ import annotations

import base64
import io
import logging
from typing import Optional

import pyotp
import qrcode

from .db import DatabaseManager

log = logging.getLogger(__name__)

ISSUER_NAME = "Nyvlo Omnichannel"


class TwoFactorService:
    """TOTP enrolment and verification for web_users."""

    def __init__(self, db_manager: DatabaseManager, issuer: str = ISSUER_NAME):
        self.db_manager = db_manager
        self.issuer = issuer

    def generate_secret(self, username: str) -> tuple[str, str]:
        secret = pyotp.random_base32()
        otpauth = pyotp.TOTP(secret).provisioning_uri(name=username, issuer_name=self.issuer)
        return secret, otpauth

    def qr_code_data_url(self, otpauth: str) -> str:
        img = qrcode.make(otpauth)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")

    def verify_token(self, code: Optional[str], secret: Optional[str]) -> bool:
        if not code or not secret:
            return False
        try:
            return bool(pyotp.TOTP(secret).verify(str(code).strip(), valid_window=1))
        except Exception:
            # malformed secret
            return False

    async def save_temp_secret(self, user_id: str, secret: str) -> None:
        # Stored unverified; activate() flips it on once the user proves possession.
        await self.db_manager.run(
            "UPDATE web_users SET two_factor_secret = ?, two_factor_verified = 0, two_factor_enabled = 0 WHERE id = ?",
            (secret, user_id),
        )

    async def activate(self, user_id: str, code: str) -> bool:
        row = await self.db_manager.get("SELECT two_factor_secret FROM web_users WHERE id = ?", (user_id,))
        secret = (row or {}).get("two_factor_secret")
        if not secret or not self.verify_token(code, secret):
            return False
        await self.db_manager.run(
            "UPDATE web_users SET two_factor_enabled = 1, two_factor_verified = 1 WHERE id = ?",
            (user_id,),
        )
        return True

    async def disable(self, user_id: str) -> None:
        await self.db_manager.run(
            "UPDATE web_users SET two_factor_enabled = 0, two_factor_verified = 0, two_factor_secret = NULL WHERE id = ?",
            (user_id,),
        )
