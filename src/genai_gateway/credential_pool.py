import os
import logging
import threading
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

lib_logger = logging.getLogger("genai_gateway")


@dataclass(frozen=True)
class Credential:
    """An upstream API key and the environment variable it came from."""

    name: str
    secret: str

    def __repr__(self) -> str:
        # Keep the secret out of logs and tracebacks.
        return f"Credential(name={self.name!r})"


class CredentialPool:
    """
    Discovers API keys from environment variables and holds them for the
    lifetime of the process.

    Supports two env var formats, used together:

    1. Primary credential: GOOGLE_GENAI_TOKEN
    2. Numbered credentials: GOOGLE_GENAI_TOKEN_1 ... GOOGLE_GENAI_TOKEN_500

    Discovery order is deterministic (primary first, then ascending suffix).
    The set of credentials never changes after initialization; only their
    cooldown status does, and that lives in CooldownTracker.
    """

    def __init__(
        self,
        env_vars: Optional[Mapping[str, str]] = None,
        base_name: str = "GOOGLE_GENAI_TOKEN",
        max_index: int = 500,
    ):
        """
        Args:
            env_vars: Mapping of environment variables (typically os.environ).
            base_name: Name of the primary variable and prefix of the numbered series.
            max_index: Highest numeric suffix scanned.
        """
        self.env_vars = os.environ if env_vars is None else env_vars
        self.base_name = base_name
        self.max_index = max_index
        self._credentials: Optional[Tuple[Credential, ...]] = None
        self._init_lock = threading.Lock()

    def _candidate_names(self) -> List[str]:
        names = [self.base_name]
        names.extend(f"{self.base_name}_{i}" for i in range(1, self.max_index + 1))
        return names

    def initialize(self) -> None:
        """Scan the environment once. Later calls are no-ops."""
        with self._init_lock:
            if self._credentials is not None:
                return

            discovered = []
            for name in self._candidate_names():
                value = self.env_vars.get(name)
                if value is None:
                    continue
                value = value.strip()
                if value:
                    discovered.append(Credential(name=name, secret=value))

            self._credentials = tuple(discovered)

        if discovered:
            lib_logger.info(
                f"Loaded {len(discovered)} credential(s) from {self.base_name}[_1..{self.max_index}]"
            )
        else:
            lib_logger.warning(
                f"No credentials found in {self.base_name} or {self.base_name}_1..{self.max_index}. "
                "Every dispatch will fail with a configuration error."
            )

    @property
    def credentials(self) -> Tuple[Credential, ...]:
        if self._credentials is None:
            self.initialize()
        return self._credentials

    def names(self) -> List[str]:
        return [cred.name for cred in self.credentials]

    def size(self) -> int:
        return len(self.credentials)

    def __len__(self) -> int:
        return self.size()

    def __iter__(self):
        return iter(self.credentials)
