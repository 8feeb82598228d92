from __future__ import annotations

import asyncio
from typing import Optional

from zajel_auth.logging import get_logger
from zajel_auth.service.errors import ConflictError, NotFoundError, ValidationError
from zajel_auth.service.verification import Channel, Purpose
from zajel_auth.storage.common import public_profile, validate_username_format

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
DELETE_CONFIRMATION = "DELETE"


class AccountService:
    """Profile management for an authenticated identity."""

    def __init__(self, store, auth) -> None:
        self.store = store
        self.auth = auth

    def _require_identity(self, user_id: str):
        identity = self.store.get_identity(user_id)
        if not identity:
            raise NotFoundError("User not found.")
        return identity

    async def _require_password(self, user_id: str, password: Optional[str]) -> None:
        if not password or not await asyncio.to_thread(
            self.auth.verify_password, user_id, password
        ):
            raise ValidationError("Incorrect password.")

    def check_username(self, username: Optional[str], user_id: Optional[str] = None) -> dict:
        try:
            validate_username_format(username or "")
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        owner = self.store.get_identity_by_username(username)
        if owner and owner.id != user_id:
            return {"available": False, "message": "Username is already taken."}
        return {"available": True, "message": "Username is available."}

    def get_profile(self, user_id: str) -> dict:
        return public_profile(self._require_identity(user_id))

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        username: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> dict:
        """Apply name/username changes; a new phone number waits for verification."""
        identity = self._require_identity(user_id)
        fields: dict = {}
        requires_verification = False
        if name and name != identity.name:
            fields["name"] = name
        if username and username != identity.username:
            try:
                validate_username_format(username)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            if self.store.username_in_use(username, exclude_id=user_id):
                raise ConflictError("Username is already taken.")
            fields["username"] = username
        if phone_number and phone_number != identity.phone_number:
            phone = self.auth.verification.sms_channel.validate(phone_number)
            if self.store.phone_in_use(phone, exclude_id=user_id):
                raise ConflictError("Phone number is already associated with another account.")
            fields["pending_phone"] = phone
            if identity.phone_verified and identity.phone_number:
                fields["phone_number"] = None
                fields["phone_verified"] = False
            requires_verification = True
        if fields:
            identity = self.store.update_identity(user_id, **fields) or identity
            logger.info("profile_updated", user_id=user_id, fields=sorted(fields))
        message = (
            "Phone number updated. Please verify the new number."
            if requires_verification
            else "User updated successfully."
        )
        return {
            "message": message,
            "user": public_profile(identity),
            "requiresVerification": requires_verification,
        }

    def update_password(self, user_id: str, old_password: str, new_password: str) -> dict:
        self._require_identity(user_id)
        if not self.auth.verify_password(user_id, old_password):
            raise ValidationError("Old password is incorrect.")
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError("Password must be at least 6 characters long.")
        self.auth.save_password(user_id, new_password)
        logger.info("password_updated", user_id=user_id)
        return {"message": "Password updated successfully."}

    async def request_email_update(self, user_id: str, new_email: Optional[str]) -> dict:
        identity = self._require_identity(user_id)
        await self.auth.verification.request_code(
            identity, Channel.EMAIL, new_email, purpose=Purpose.EMAIL_CHANGE
        )
        return {"message": "Verification code sent to new email."}

    async def verify_email_update(self, user_id: str, code: str, password: str) -> dict:
        identity = self._require_identity(user_id)
        if not identity.pending_email:
            raise ValidationError("No email change in progress.")
        await self._require_password(user_id, password)
        await self.auth.verification.verify_code(
            identity, Channel.EMAIL, code, purpose=Purpose.EMAIL_CHANGE
        )
        logger.info("email_updated", user_id=user_id)
        return {"message": "Email updated successfully."}

    async def delete_account(self, user_id: str, password: str, confirmation: str) -> dict:
        if confirmation != DELETE_CONFIRMATION:
            raise ValidationError("You must type 'DELETE' to confirm.")
        identity = self._require_identity(user_id)
        await self._require_password(user_id, password)
        await self.auth.sessions.clear_active_refresh_token(user_id)
        await self.auth.sessions.clear_reset_token(user_id)
        self.store.delete_identity(user_id)
        sent = await asyncio.to_thread(
            self.auth.email.send_account_deleted, identity.email, identity.name
        )
        if not sent:
            logger.error("account_deletion_email_failed", user_id=user_id)
        logger.info("account_deleted", user_id=user_id)
        return {"message": "Account deleted successfully."}
