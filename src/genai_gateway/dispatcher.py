import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import GatewayConfig
from .cooldown_manager import CooldownTracker
from .credential_pool import Credential, CredentialPool
from .error_handler import (
    AUTH_INVALID,
    RATE_LIMITED,
    TRANSPORT,
    UNKNOWN,
    ClassifiedError,
    ConfigurationError,
    DispatchError,
    classify_error,
)
from .failure_logger import log_failure
from .selection import build_selector
from .upstream import RequestEnvelope

lib_logger = logging.getLogger("genai_gateway")

SUCCESS = "success"


@dataclass
class DispatchAttempt:
    """One upstream attempt within a dispatch."""

    credential: str
    attempt: int
    outcome: str
    status_code: Optional[int] = None


@dataclass
class DispatchResult:
    """A successful dispatch and how it was served."""

    response: Dict[str, Any]
    credential: str
    attempts: int
    pool_size: int
    history: List[DispatchAttempt] = field(default_factory=list)

    def metadata(self) -> Dict[str, Any]:
        """Observability data; never part of the semantic payload."""
        return {
            "keyName": self.credential,
            "attempts": self.attempts,
            "poolSize": self.pool_size,
        }


class RequestDispatcher:
    """
    Executes one logical upstream call with credential rotation.

    Rate-limited credentials go on cooldown and the call is retried with a
    fresh selection. Credentials upstream rejects as invalid are skipped for
    the rest of the dispatch. Request-shape errors fail immediately, since
    no other credential can fix them.
    """

    def __init__(
        self,
        pool: CredentialPool,
        cooldowns: CooldownTracker,
        upstream,
        config: Optional[GatewayConfig] = None,
        selector=None,
    ):
        """
        Args:
            pool: Credentials available to this process.
            cooldowns: Shared cooldown state.
            upstream: Object with `async call(credential, envelope) -> dict`
                and optionally `validate(envelope)`.
            config: Retry and cooldown tunables.
            selector: Selection policy; built from config when omitted.
        """
        self.pool = pool
        self.cooldowns = cooldowns
        self.upstream = upstream
        self.config = config or GatewayConfig()
        self.selector = selector or build_selector(self.config.selection_policy)

    def _candidates(self, invalid: Set[str]) -> Tuple[List[Credential], int]:
        """
        Credentials eligible for the next attempt, plus how many of them are
        outside cooldown. When every credential is cooling down the whole
        pool is eligible; cooldown is a heuristic and must never become an
        outage on its own.
        """
        usable = [cred for cred in self.pool.credentials if cred.name not in invalid]
        available = set(self.cooldowns.available_subset(cred.name for cred in usable))
        candidates = [cred for cred in usable if cred.name in available]
        if not candidates and usable:
            lib_logger.warning(
                f"All {len(usable)} usable credential(s) are cooling down. Ignoring cooldowns."
            )
            candidates = usable
        return candidates, len(available)

    def cooldown_window(self, classified: ClassifiedError) -> float:
        if classified.quota_exceeded:
            return self.config.cooldown_seconds
        hint = classified.retry_after or 0
        return min(
            self.config.cooldown_seconds,
            max(self.config.rate_limit_cooldown_seconds, hint),
        )

    def _require_pool(self) -> List[Credential]:
        credentials = list(self.pool.credentials)
        if not credentials:
            raise ConfigurationError(
                "No API keys found in environment variables.", attempts=0
            )
        return credentials

    def lease_credential(self) -> Credential:
        """
        Pick one credential for a direct streaming session using the same
        cooldown-aware selection as dispatch(). No upstream call is made.
        """
        credentials = self._require_pool()
        candidates, _ = self._candidates(set())
        credential = self.selector.select(credentials, candidates)
        lib_logger.info(f"Leased {credential.name} for a live session")
        return credential

    async def dispatch(self, envelope: RequestEnvelope) -> DispatchResult:
        """
        Run the request, rotating credentials as needed.

        Raises:
            ConfigurationError: The pool is empty (no upstream call made).
            DispatchError: Terminal failure; the subclass reflects the last
                observed failure class.
        """
        credentials = self._require_pool()

        validate = getattr(self.upstream, "validate", None)
        if validate is not None:
            validate(envelope)

        max_attempts = self.config.max_attempts(len(credentials))
        model = envelope.model or self.config.default_model

        invalid: Set[str] = set()
        history: List[DispatchAttempt] = []
        last_classified: Optional[ClassifiedError] = None
        extra_retry_used = False
        attempt = 0

        while attempt < max_attempts:
            candidates, available_count = self._candidates(invalid)
            if not candidates:
                lib_logger.error(
                    f"Every credential was rejected as invalid after {attempt} attempt(s)."
                )
                break

            credential = self.selector.select(credentials, candidates)
            attempt += 1
            lib_logger.info(
                f"Dispatching {envelope.operation} for {model} with {credential.name} "
                f"(Attempt {attempt}/{max_attempts})"
            )

            try:
                response = await self.upstream.call(credential, envelope)
            except Exception as e:
                classified = classify_error(e)
                last_classified = classified
                history.append(
                    DispatchAttempt(
                        credential=credential.name,
                        attempt=attempt,
                        outcome=classified.error_type,
                        status_code=classified.status_code,
                    )
                )
                log_failure(credential.name, credential.secret, model, attempt, classified)

                if classified.error_type == RATE_LIMITED:
                    window = self.cooldown_window(classified)
                    self.cooldowns.mark_cooldown(credential.name, window)
                    lib_logger.warning(
                        f"{credential.name} rate limited (HTTP {classified.status_code}). "
                        f"Cooling down for {window:.0f}s. Rotating."
                    )
                    continue

                if classified.error_type == AUTH_INVALID:
                    invalid.add(credential.name)
                    lib_logger.error(
                        f"{credential.name} was rejected by upstream as invalid "
                        f"(HTTP {classified.status_code}: {classified.message}). "
                        "This credential is misconfigured. Rotating."
                    )
                    continue

                opted_in = (
                    classified.error_type == TRANSPORT and self.config.retry_transport
                ) or (classified.error_type == UNKNOWN and self.config.retry_unknown)
                if opted_in and not extra_retry_used:
                    extra_retry_used = True
                    lib_logger.warning(
                        f"{classified.error_type} error with {credential.name}: "
                        f"{classified.message}. Retrying once."
                    )
                    continue

                lib_logger.error(
                    f"Non-recoverable error ({classified.error_type}) for {model}: "
                    f"{classified.message}. Failing."
                )
                raise classified.to_exception(attempts=attempt, history=history) from e

            history.append(
                DispatchAttempt(credential=credential.name, attempt=attempt, outcome=SUCCESS)
            )
            if attempt > 1:
                lib_logger.info(f"{model} served by {credential.name} after {attempt} attempts")
            return DispatchResult(
                response=response,
                credential=credential.name,
                attempts=attempt,
                pool_size=available_count,
                history=history,
            )

        if last_classified is None:
            raise DispatchError("Dispatch made no attempts.", attempts=attempt)

        lib_logger.error(
            f"ALL ATTEMPTS FAILED: {attempt} tried for {model}. "
            f"Last error: {last_classified.error_type}"
        )
        raise last_classified.to_exception(attempts=attempt, history=history)

    def status(self) -> Dict[str, Any]:
        """Pool and cooldown summary for health checks. Contains no secrets."""
        cooling = self.cooldowns.snapshot()
        return {
            "poolSize": self.pool.size(),
            "available": self.pool.size() - len(cooling),
            "coolingDown": {name: round(seconds, 1) for name, seconds in cooling.items()},
            "selectionPolicy": self.selector.name,
        }
