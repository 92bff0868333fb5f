"""Credential gate for the local privilege-escalation secret."""

import logging
import subprocess
import threading
from typing import Optional, Sequence

from .errors import InvalidSecretError, PrivilegeError, SecretRequiredError


PROBE_TIMEOUT = 10

REJECTION_MARKERS = ("incorrect password", "sorry, try again")


class CredentialGate:
    """
    Validates, caches and persists the local sudo password.

    The gate is the only writer of the cached secret. A secret is persisted
    only after it passed a validation probe, and a secret that later fails a
    probe is purged from memory and from the store.
    """

    def __init__(self, store=None, privileged_command: Sequence[str] = ("wg-quick", "--help")):
        """
        Initialize the gate.

        Args:
            store: secret store with get() -> (secret, found), save(secret), delete()
            privileged_command: command whose passwordless execution is probed
        """
        self.store = store
        self.privileged_command = list(privileged_command)
        self.logger = logging.getLogger(__name__)
        self._secret: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def secret(self) -> Optional[str]:
        """Cached secret; empty string when no password is needed."""
        return self._secret

    def secret_required(self) -> bool:
        """Probe whether the privileged command needs a password."""
        try:
            result = subprocess.run(
                ["sudo", "-n", *self.privileged_command],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Passwordless sudo probe failed: {e}")
            return True

        if result.returncode == 0:
            self.logger.info(f"{self.privileged_command[0]} configured for passwordless sudo")
            return False

        self.logger.debug(f"Passwordless sudo probe refused: {result.stderr.strip()}")
        return True

    def validate(self, secret: str):
        """Run a sudo probe with the secret; raise InvalidSecretError if rejected."""
        try:
            result = subprocess.run(
                ["sudo", "-S", "-k", "-p", "", "true"],
                input=secret + "\n",
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT
            )
        except subprocess.TimeoutExpired as e:
            raise InvalidSecretError("sudo validation timed out") from e
        except OSError as e:
            raise PrivilegeError(f"sudo is not available: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in REJECTION_MARKERS):
                raise InvalidSecretError("invalid sudo password")
            raise InvalidSecretError(f"sudo validation failed (stderr: {stderr})")

    def obtain(self) -> str:
        """
        Return a usable secret or raise SecretRequiredError.

        Order: passwordless probe, in-memory cache, persisted store. Cached
        and stored secrets are re-validated before use.
        """
        if not self.secret_required():
            with self._lock:
                self._secret = ""
            return ""

        with self._lock:
            cached = self._secret

        if cached:
            try:
                self.validate(cached)
                return cached
            except InvalidSecretError:
                self.logger.warning("Cached sudo password no longer valid, purging it")
                self.reject()

        if self.store is not None:
            stored, found = self.store.get()
            if found and stored:
                try:
                    self.validate(stored)
                    with self._lock:
                        self._secret = stored
                    self.logger.info("Using stored sudo password")
                    return stored
                except InvalidSecretError:
                    self.logger.warning("Stored sudo password invalid, removing it")
                    self._delete_stored()

        raise SecretRequiredError("sudo password required but not available")

    def submit(self, secret: str) -> str:
        """
        Validate an operator-supplied secret, then cache and persist it.

        Raises InvalidSecretError without caching or persisting anything.
        """
        self.validate(secret)

        with self._lock:
            self._secret = secret

        if self.store is not None:
            try:
                self.store.save(secret)
                self.logger.info("Sudo password validated and saved")
            except Exception as e:
                # the in-memory copy still serves this process
                self.logger.warning(f"Failed to save sudo password: {e}")

        return secret

    def reject(self):
        """Forget a secret the privileged subsystem refused."""
        with self._lock:
            self._secret = None
        self._delete_stored()

    def _delete_stored(self):
        if self.store is None:
            return
        try:
            self.store.delete()
        except Exception as e:
            self.logger.error(f"Failed to delete stored sudo password: {e}")
