"""
Backup & cloud sync — move the persisted ciphertext blobs as one bundle.

Bundle format::

    {"meta": {"app", "version", "createdAt", "vaultId"},
     "data": {"salt", "profile", "contacts", "history", "canary"?}}

Each ``data`` value is the raw persisted blob (already encrypted per
field). Nothing here decrypts or re-encrypts; whether the blobs decrypt
is only discovered on the next unlock/load.

Importing is destructive: all blobs are replaced in one storage
``replace`` call and anything absent from the bundle is discarded.
"""
import hashlib
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import (
    BackupValidationFailure,
    CloudBackupNotFound,
    NoVaultError,
    StorageParseFailure,
)
from ..storage import StoragePort
from .cloud import RemoteBlobStore
from .config import (
    BLOB_CANARY,
    BLOB_CONTACTS,
    BLOB_HISTORY,
    BLOB_PROFILE,
    BLOB_SALT,
    BLOB_NAMES,
    VaultConfig,
)
from .contacts import public_profile_id
from .crypto import load_blob
from .queue import MutationQueue
from .records import now_ms
from .session import VaultSession

logger = logging.getLogger("shadowlink.vault")


class BundleMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app: str
    version: str
    created_at: str = Field(alias="createdAt")
    vault_id: Optional[str] = Field(default=None, alias="vaultId")


class BundleData(BaseModel):
    salt: Optional[str] = None
    profile: Optional[str] = None
    contacts: Optional[str] = None
    history: Optional[str] = None
    canary: Optional[str] = None


class VaultBundle(BaseModel):
    """Snapshot of every persisted blob plus metadata."""

    meta: BundleMeta
    data: BundleData

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_json(self, indent: bool = False) -> str:
        option = orjson.OPT_INDENT_2 if indent else 0
        return orjson.dumps(self.to_dict(), option=option).decode("utf-8")

    @classmethod
    def parse(cls, payload: Union["VaultBundle", dict, str, bytes]) -> "VaultBundle":
        """Validate a bundle from a model, dict or JSON text.

        Raises:
            BackupValidationFailure: If the payload is not a bundle or has
                no salt.
        """
        if isinstance(payload, VaultBundle):
            bundle = payload
        else:
            if isinstance(payload, (str, bytes)):
                try:
                    payload = orjson.loads(payload)
                except orjson.JSONDecodeError as err:
                    raise BackupValidationFailure(f"Backup is not valid JSON: {err}") from err
            try:
                bundle = cls.model_validate(payload)
            except ValidationError as err:
                raise BackupValidationFailure(
                    f"Invalid backup format: {err.error_count()} error(s)"
                ) from err
        if not bundle.data.salt:
            raise BackupValidationFailure("Backup has no salt")
        return bundle


def salt_fingerprint(salt: str) -> str:
    return hashlib.sha256(salt.encode("utf-8")).hexdigest()[:32]


def backup_filename(bundle: VaultBundle, app_name: Optional[str] = None) -> str:
    """``<app>-backup-<vaultId[:8]>-<YYYY-MM-DD>.json``."""
    app = (app_name or bundle.meta.app).lower()
    vault_id = (bundle.meta.vault_id or "vault")[:8]
    try:
        day = datetime.fromisoformat(bundle.meta.created_at).date()
    except ValueError:
        day = date.today()
    return f"{app}-backup-{vault_id}-{day.isoformat()}.json"


def _bundle_from_cloud_payload(payload: Any, config: VaultConfig) -> VaultBundle:
    """Accept a full bundle or the flat ``{salt, profile, ...}`` payload."""
    if isinstance(payload, dict) and "data" in payload and "meta" in payload:
        return VaultBundle.parse(payload)
    if not isinstance(payload, dict):
        raise BackupValidationFailure("Cloud payload is not an object")
    updated = payload.get("lastUpdated")
    created = (
        datetime.fromtimestamp(updated / 1000, tz=timezone.utc).isoformat()
        if isinstance(updated, (int, float)) and not isinstance(updated, bool)
        else datetime.now(timezone.utc).isoformat()
    )
    return VaultBundle.parse({
        "meta": {
            "app": config.app_name,
            "version": config.backup_version,
            "createdAt": created,
            "vaultId": None,
        },
        "data": {name: payload.get(name) for name in BLOB_NAMES},
    })


class BackupManager:
    """Export, import and cloud push/pull of the raw persisted blobs."""

    def __init__(
        self,
        storage: StoragePort,
        config: VaultConfig,
        queue: MutationQueue,
        clock: Optional[Callable[[], int]] = None,
        session: Optional[VaultSession] = None,
    ):
        self._storage = storage
        self._config = config
        self._queue = queue
        self._clock = clock or now_ms
        self._session = session

    async def _read_blobs(self) -> dict[str, Optional[str]]:
        return {
            blob: await self._storage.get(self._config.storage_key(blob))
            for blob in BLOB_NAMES
        }

    async def _replace_blobs(self, data: BundleData) -> None:
        values = {
            self._config.storage_key(blob): value
            for blob, value in data.model_dump().items()
            if value
        }
        await self._storage.replace(values)
        if self._session is not None:
            # the old key cannot read the imported blobs
            self._session.lock()

    # ------------------------------------------------------------------
    # Local export / import
    # ------------------------------------------------------------------

    async def export_bundle(self) -> VaultBundle:
        """Snapshot every persisted blob without decrypting anything.

        Raises:
            NoVaultError: If there is no vault (no salt) to export.
        """
        blobs = await self._queue.submit(self._read_blobs)
        salt = blobs[BLOB_SALT]
        if not salt:
            raise NoVaultError("Nothing to export: no vault exists")
        created = datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc)
        bundle = VaultBundle(
            meta=BundleMeta(
                app=self._config.app_name,
                version=self._config.backup_version,
                created_at=created.isoformat(),
                vault_id=public_profile_id(blobs[BLOB_PROFILE]) or salt_fingerprint(salt),
            ),
            data=BundleData(
                salt=salt,
                profile=blobs[BLOB_PROFILE],
                contacts=blobs[BLOB_CONTACTS],
                history=blobs[BLOB_HISTORY],
                canary=blobs[BLOB_CANARY],
            ),
        )
        logger.info("Exported vault bundle vaultId=%s", bundle.meta.vault_id)
        return bundle

    async def import_bundle(self, payload: Union[VaultBundle, dict, str, bytes]) -> VaultBundle:
        """Replace every persisted blob with the bundle's contents.

        When bound to a session, it is locked in the same queued job, so
        writes queued behind the import fail with ``VaultLockedError``.

        Raises:
            BackupValidationFailure: If the bundle is malformed or has no
                salt. Nothing is written in that case.
        """
        bundle = VaultBundle.parse(payload)
        await self._queue.submit(self._replace_blobs, bundle.data)
        logger.warning(
            "Imported vault bundle vaultId=%s; previous data replaced",
            bundle.meta.vault_id,
        )
        return bundle

    async def export_to_file(self, target: Union[str, Path]) -> Path:
        """Write the bundle as pretty JSON.

        ``target`` may be a directory, in which case the standard backup
        file name is used.
        """
        bundle = await self.export_bundle()
        path = Path(target)
        if path.is_dir():
            path = path / backup_filename(bundle)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(bundle.to_json(indent=True), encoding="utf-8")
        logger.info("Backup written to %s", path)
        return path

    async def import_from_file(self, source: Union[str, Path]) -> VaultBundle:
        path = Path(source)
        try:
            raw = path.read_bytes()
        except OSError as err:
            raise BackupValidationFailure(f"Cannot read backup file {path}: {err}") from err
        return await self.import_bundle(raw)

    # ------------------------------------------------------------------
    # Cloud sync
    # ------------------------------------------------------------------

    async def cloud_push(self, remote: RemoteBlobStore, remote_id: str) -> dict[str, Any]:
        """Upload the current bundle as an opaque document.

        Raises:
            RemoteUnavailable: If the remote store cannot be reached; local
                state is untouched.
        """
        bundle = await self.export_bundle()
        document = {
            "encryptedData": bundle.to_json(),
            "lastUpdated": self._clock(),
        }
        await remote.put_document(remote_id, document)
        logger.info("Pushed vault bundle to remote id=%s", remote_id)
        return document

    async def cloud_pull(self, remote: RemoteBlobStore, remote_id: str) -> VaultBundle:
        """Fetch the document under ``remote_id`` and import it.

        Raises:
            CloudBackupNotFound: If no document exists under ``remote_id``.
            RemoteUnavailable: If the remote store cannot be reached.
            BackupValidationFailure: If the document is not a valid bundle.
        """
        document = await remote.get_document(remote_id)
        if document is None:
            raise CloudBackupNotFound(f"No cloud backup found for id {remote_id!r}")
        encrypted = document.get("encryptedData") if isinstance(document, dict) else None
        if not isinstance(encrypted, str):
            raise BackupValidationFailure("Cloud document has no encryptedData")
        try:
            payload = load_blob(encrypted)
        except StorageParseFailure as err:
            raise BackupValidationFailure(f"Cloud payload is not valid JSON: {err}") from err
        bundle = _bundle_from_cloud_payload(payload, self._config)
        await self.import_bundle(bundle)
        logger.info("Pulled vault bundle from remote id=%s", remote_id)
        return bundle
