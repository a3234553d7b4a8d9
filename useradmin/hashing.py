"""Password hashing delegated to Authelia or to the argon2 backend of passlib."""
from __future__ import annotations

import asyncio
import logging
import re

import anyio
from passlib.context import CryptContext
from passlib.exc import MissingBackendError

from .config import Argon2Config, Settings
from .exceptions import HashingError

logger = logging.getLogger("useradmin.hashing")

# PHC style strings such as ``$argon2id$v=19$m=65536,t=3,p=4$salt$digest``.
_PHC_PATTERN = re.compile(r"^\$[a-z0-9-]+\$\S+$")
_DIGEST_PREFIX = "Digest:"


def looks_like_hash(value: str) -> bool:
    """Return ``True`` when ``value`` is a self-describing hash string."""

    return bool(_PHC_PATTERN.fullmatch(value.strip()))


def _build_context(argon2: Argon2Config) -> CryptContext:
    return CryptContext(
        schemes=["argon2", "sha512_crypt"],
        default="argon2",
        deprecated="auto",
        argon2__type="id",
        argon2__rounds=argon2.time_cost,
        argon2__memory_cost=argon2.memory_cost,
        argon2__parallelism=argon2.parallelism,
    )


class HashProvider:
    """Produce and check password hashes within a bounded time."""

    name = "abstract"

    def __init__(self, *, timeout: float, argon2: Argon2Config | None = None) -> None:
        self._timeout = timeout
        self._context = _build_context(argon2 or Argon2Config())

    async def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise HashingError("Refusing to hash an empty password")
        try:
            digest = await asyncio.wait_for(self._generate(plaintext), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("%s hash generation timed out after %.1fs", self.name, self._timeout)
            raise HashingError("Password hash generation timed out") from exc

        digest = digest.strip()
        if not looks_like_hash(digest):
            logger.error("%s hash provider returned malformed output", self.name)
            raise HashingError("Password hash generation failed")
        return digest

    async def verify(self, plaintext: str, hashed: str) -> bool:
        """Check ``plaintext`` against a stored PHC hash string."""

        try:
            return await asyncio.wait_for(
                anyio.to_thread.run_sync(self._verify_sync, plaintext, hashed, abandon_on_cancel=True),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise HashingError("Password verification timed out") from exc

    def _verify_sync(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._context.verify(plaintext, hashed)
        except ValueError:
            return False
        except MissingBackendError as exc:
            raise HashingError(f"No backend available to verify hash: {exc}") from exc

    async def _generate(self, plaintext: str) -> str:
        raise NotImplementedError


class PasslibHashProvider(HashProvider):
    """Hash in-process with argon2id through passlib and argon2-cffi."""

    name = "passlib"

    async def _generate(self, plaintext: str) -> str:
        return await anyio.to_thread.run_sync(self._hash_sync, plaintext, abandon_on_cancel=True)

    def _hash_sync(self, plaintext: str) -> str:
        try:
            return self._context.hash(plaintext)
        except (MissingBackendError, ValueError) as exc:
            logger.error("passlib failed to hash password: %s", exc)
            raise HashingError("Password hash generation failed") from exc


class AutheliaHashProvider(HashProvider):
    """Run ``authelia crypto hash generate`` and return its digest.

    The password is passed as an argument vector entry, never through a
    shell.
    """

    name = "authelia"

    def __init__(
        self,
        *,
        binary: str = "authelia",
        timeout: float,
        argon2: Argon2Config | None = None,
    ) -> None:
        super().__init__(timeout=timeout, argon2=argon2)
        self._binary = binary

    @property
    def binary(self) -> str:
        return self._binary

    async def _generate(self, plaintext: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                "crypto",
                "hash",
                "generate",
                "argon2",
                "--password",
                plaintext,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Unable to start %s: %s", self._binary, exc)
            raise HashingError("Password hash generation failed") from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            logger.error(
                "%s exited with status %s: %s",
                self._binary,
                process.returncode,
                stderr.decode("utf-8", "replace").strip(),
            )
            raise HashingError("Password hash generation failed")

        return _extract_digest(stdout.decode("utf-8", "replace"))


def _extract_digest(output: str) -> str:
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith(_DIGEST_PREFIX):
            return stripped[len(_DIGEST_PREFIX):].strip()
    return output.strip()


def build_hash_provider(settings: Settings) -> HashProvider:
    if settings.hash_provider == "passlib":
        return PasslibHashProvider(timeout=settings.hash_timeout, argon2=settings.argon2)
    return AutheliaHashProvider(
        binary=settings.authelia_bin,
        timeout=settings.hash_timeout,
        argon2=settings.argon2,
    )


__all__ = [
    "AutheliaHashProvider",
    "HashProvider",
    "PasslibHashProvider",
    "build_hash_provider",
    "looks_like_hash",
]
