"""Credential repository: profile name <-> typed credential value.

:class:`CredentialRepository` composes a
:class:`~credvault.auth.backend.SecretBackend` (secret material) with a
:class:`~credvault.config.ProfileRecordStore` (non-secret metadata) so
that callers deal in :data:`~credvault.models.CredentialValue` objects and
never in backend keys.

Backend layout per profile ``<name>``:

- ``vault:<name>:apikey`` -- the API key string.
- ``vault:<name>:oauth-access`` -- JSON object with ``access_token``,
  ``expires_at`` and any preserved token extras.
- ``vault:<name>:oauth-refresh`` -- the refresh token, when there is one.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from credvault.auth.backend import (
    ALL_SLOTS,
    SLOT_API_KEY,
    SLOT_OAUTH_ACCESS,
    SLOT_OAUTH_REFRESH,
    SecretBackend,
    secret_key,
)
from credvault.config import ProfileRecordStore, validate_api_key, validate_profile_name
from credvault.exceptions import (
    CredentialMissingError,
    PartialRemovalError,
    ProfileExistsError,
    ProfileNotFoundError,
    VaultError,
)
from credvault.models import (
    ApiKey,
    CredentialType,
    CredentialValue,
    OAuthToken,
    ProfileRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


def _access_payload(token: OAuthToken) -> str:
    data = token.model_dump(mode="json", exclude={"kind", "refresh_token"})
    return json.dumps(data, sort_keys=True)


class CredentialRepository:
    """Store, load, and delete profile credentials.

    Args:
        backend: Where secret values live.
        records: Where profile metadata lives.
    """

    def __init__(self, backend: SecretBackend, records: ProfileRecordStore) -> None:
        self._backend = backend
        self._records = records

    @property
    def records(self) -> ProfileRecordStore:
        return self._records

    def store(
        self,
        name: str,
        value: CredentialValue,
        description: Optional[str] = None,
        create_only: bool = False,
        metadata: Optional[dict[str, str]] = None,
    ) -> ProfileRecord:
        """Write *value* for profile *name* and upsert its record.

        Secrets are written before the record so that a record never points
        at a credential that was not stored. Secret slots left over from a
        previous credential type are deleted. For an existing record,
        ``created_at``, ``last_used_at`` and (unless given) ``description``
        are kept, and *metadata* is merged into the existing map.

        Raises:
            InvalidProfileNameError: If *name* is not a valid profile name.
            InvalidApiKeyError: If an API key does not look like one.
            ProfileExistsError: If *create_only* is set and *name* exists.
            SecretBackendError: If the backend write fails.
        """
        validate_profile_name(name)
        existing = self._records.load().find(name)
        if create_only and existing is not None:
            raise ProfileExistsError(name)

        if isinstance(value, ApiKey):
            value = ApiKey(secret=validate_api_key(value.secret))
            self._backend.set(secret_key(name, SLOT_API_KEY), value.secret)
            self._backend.delete(secret_key(name, SLOT_OAUTH_ACCESS))
            self._backend.delete(secret_key(name, SLOT_OAUTH_REFRESH))
            expires_at = None
        elif isinstance(value, OAuthToken):
            self._backend.set(secret_key(name, SLOT_OAUTH_ACCESS), _access_payload(value))
            if value.refresh_token:
                self._backend.set(secret_key(name, SLOT_OAUTH_REFRESH), value.refresh_token)
            else:
                self._backend.delete(secret_key(name, SLOT_OAUTH_REFRESH))
            self._backend.delete(secret_key(name, SLOT_API_KEY))
            expires_at = value.expires_at
        else:
            raise TypeError(f"Unsupported credential value: {type(value).__name__}")

        merged_metadata = dict(existing.metadata) if existing is not None else {}
        merged_metadata.update(metadata or {})
        record = ProfileRecord(
            name=name,
            description=description if description is not None else (
                existing.description if existing is not None else None
            ),
            credential_type=value.credential_type,
            created_at=existing.created_at if existing is not None else utcnow(),
            last_used_at=existing.last_used_at if existing is not None else None,
            expires_at=expires_at,
            metadata=merged_metadata,
        )
        self._records.upsert(record, create_only=create_only)
        logger.debug("Stored %s credential for profile %s", record.credential_type.value, name)
        return record

    def load(self, name: str) -> CredentialValue:
        """Return the credential for *name*.

        Raises:
            ProfileNotFoundError: If there is no record called *name*.
            CredentialMissingError: If the record exists but the backend
                holds no readable credential for it.
        """
        record = self._records.get(name)
        if record.credential_type is CredentialType.API_KEY:
            secret = self._backend.get(secret_key(name, SLOT_API_KEY))
            if not secret:
                raise CredentialMissingError(name)
            return ApiKey(secret=secret)

        raw = self._backend.get(secret_key(name, SLOT_OAUTH_ACCESS))
        if not raw:
            raise CredentialMissingError(name)
        try:
            payload: Any = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("payload is not an object")
            payload.pop("kind", None)
            payload["refresh_token"] = self._backend.get(secret_key(name, SLOT_OAUTH_REFRESH))
            return OAuthToken.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            raise CredentialMissingError(name, detail="stored token is unreadable") from exc

    def delete(self, name: str) -> None:
        """Remove every secret slot of *name*, then its record.

        Raises:
            ProfileNotFoundError: If there is no record called *name*.
            PartialRemovalError: If exactly one of the two halves failed.
        """
        if not self._records.exists(name):
            raise ProfileNotFoundError(name)

        secret_error: Optional[Exception] = None
        try:
            for slot in ALL_SLOTS:
                self._backend.delete(secret_key(name, slot))
        except (VaultError, OSError) as exc:
            secret_error = exc

        record_error: Optional[Exception] = None
        try:
            self._records.remove(name)
        except (VaultError, OSError) as exc:
            record_error = exc

        if secret_error is not None and record_error is not None:
            raise secret_error
        if secret_error is not None:
            raise PartialRemovalError(
                name, removed="profile record", failed="secret store entries", cause=secret_error
            ) from secret_error
        if record_error is not None:
            raise PartialRemovalError(
                name, removed="secret store entries", failed="profile record", cause=record_error
            ) from record_error
        logger.debug("Removed profile %s", name)

    def touch_last_used(self, name: str) -> None:
        """Record that *name* was just used. Failures are logged, never raised."""
        try:
            self._records.touch(name)
        except (VaultError, OSError) as exc:
            logger.warning("Could not update last-used time for profile %s: %s", name, exc)
