"""Credential store for OAuth artifacts.

Each ServerIdentity owns a namespace of three artifacts in the config
directory: the client registration, the token set and the PKCE verifier.
Writes go to a temporary file that is renamed into place, so a reader
observes either the previous content or the complete new content.
"""

import os
import uuid
from pathlib import Path
from typing import Optional, TypeVar

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ValidationError

from shared.logging import get_logger
from shared.models import ClientCredential, ServerIdentity, TokenSet

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CLIENT_INFO_FILE = "client_info.json"
TOKENS_FILE = "tokens.json"
CODE_VERIFIER_FILE = "code_verifier.txt"

FILE_MODE = 0o600


class CredentialStore:
    """
    File-based, per-server credential persistence.

    Files live at ``<config_dir>/<server hash>_<artifact>`` and are
    readable by the owner only.
    """

    def __init__(self, config_dir: str | Path) -> None:
        self.config_dir = Path(config_dir).expanduser()

    def path_for(self, identity: ServerIdentity, name: str) -> Path:
        """Return the file path of an artifact."""
        return self.config_dir / f"{identity.hash}_{name}"

    async def _ensure_dir(self) -> None:
        await aiofiles.os.makedirs(self.config_dir, exist_ok=True)

    async def _write_atomic(self, path: Path, content: str) -> None:
        await self._ensure_dir()
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
                await f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, FILE_MODE)
            await aiofiles.os.replace(tmp_path, path)
        finally:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)

    async def _read_text(self, path: Path) -> Optional[str]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def _read_model(self, path: Path, model: type[ModelT]) -> Optional[ModelT]:
        content = await self._read_text(path)
        if content is None:
            return None
        try:
            return model.model_validate_json(content)
        except ValidationError as e:
            logger.warning(
                "Ignoring invalid credential file",
                path=str(path),
                errors=e.error_count()
            )
            return None

    async def _delete(self, path: Path) -> bool:
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False

    # Client registration

    async def read_client(self, identity: ServerIdentity) -> Optional[ClientCredential]:
        return await self._read_model(self.path_for(identity, CLIENT_INFO_FILE), ClientCredential)

    async def write_client(self, identity: ServerIdentity, client: ClientCredential) -> None:
        logger.debug("Saving client registration", client_id=client.client_id)
        await self._write_atomic(
            self.path_for(identity, CLIENT_INFO_FILE),
            client.model_dump_json(exclude_none=True, indent=2)
        )

    async def delete_client(self, identity: ServerIdentity) -> bool:
        return await self._delete(self.path_for(identity, CLIENT_INFO_FILE))

    # Token set

    async def read_tokens(self, identity: ServerIdentity) -> Optional[TokenSet]:
        return await self._read_model(self.path_for(identity, TOKENS_FILE), TokenSet)

    async def write_tokens(self, identity: ServerIdentity, tokens: TokenSet) -> None:
        logger.debug(
            "Saving tokens",
            has_refresh_token=tokens.refresh_token is not None,
            expires_in=tokens.expires_in
        )
        await self._write_atomic(
            self.path_for(identity, TOKENS_FILE),
            tokens.model_dump_json(exclude_none=True, indent=2)
        )

    async def delete_tokens(self, identity: ServerIdentity) -> bool:
        return await self._delete(self.path_for(identity, TOKENS_FILE))

    # PKCE verifier

    async def read_verifier(self, identity: ServerIdentity) -> Optional[str]:
        content = await self._read_text(self.path_for(identity, CODE_VERIFIER_FILE))
        return content.strip() if content else None

    async def write_verifier(self, identity: ServerIdentity, verifier: str) -> None:
        await self._write_atomic(self.path_for(identity, CODE_VERIFIER_FILE), verifier)

    async def delete_verifier(self, identity: ServerIdentity) -> bool:
        return await self._delete(self.path_for(identity, CODE_VERIFIER_FILE))

    async def delete_all(self, identity: ServerIdentity) -> None:
        """Remove every artifact for a server."""
        await self.delete_client(identity)
        await self.delete_tokens(identity)
        await self.delete_verifier(identity)
