"""Configuration management for lendbook."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict

from .core import ConfigurationError, FIRM_KIND_ADJUSTMENT
from .logging import setup_logging
from .money import Money
from .replay import FIRM_ACCOUNT_SIGNS, SignTable


@dataclass
class EngineConfig:
    """Engine configuration.

    Attributes:
        settlement_epsilon: Outstanding at or below this counts as settled
        max_retries: Attempts after a ConcurrentModification before rejecting
        adjustment_sign: Sign applied to firm-account "adjustment" rows
        custom_firm_kinds: Extra firm-account kinds and their signs
        enable_replay_cache: Memoise replay results between writes
        log_level: Level applied by configure_logging()
        log_format: "standard" or "json", applied by configure_logging()
    """

    settlement_epsilon: Money = field(default_factory=lambda: Money.of("0.01"))
    max_retries: int = 3
    adjustment_sign: int = 1
    custom_firm_kinds: Dict[str, int] = field(default_factory=dict)
    enable_replay_cache: bool = False
    log_level: str = "INFO"
    log_format: str = "standard"

    def __post_init__(self):
        if not isinstance(self.settlement_epsilon, Money):
            try:
                self.settlement_epsilon = Money.of(self.settlement_epsilon)
            except ValueError as e:
                raise ConfigurationError(f"settlement_epsilon: {e}") from None
        if self.settlement_epsilon.is_negative():
            raise ConfigurationError("settlement_epsilon cannot be negative")
        if self.max_retries < 1:
            raise ConfigurationError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.adjustment_sign not in (-1, 1):
            raise ConfigurationError(
                f"adjustment_sign must be -1 or +1, got {self.adjustment_sign}"
            )
        for kind, sign in self.custom_firm_kinds.items():
            if sign not in (-1, 0, 1):
                raise ConfigurationError(f"Sign for firm kind {kind!r} must be -1, 0 or +1")
        if self.log_format not in ("standard", "json"):
            raise ConfigurationError(f"Unknown log_format: {self.log_format!r}")

    def firm_sign_table(self) -> SignTable:
        """Effective firm-account sign table: defaults, adjustment sign, custom kinds."""
        table = FIRM_ACCOUNT_SIGNS.with_kind(FIRM_KIND_ADJUSTMENT, self.adjustment_sign)
        for kind, sign in self.custom_firm_kinds.items():
            table = table.with_kind(kind, sign)
        return table

    def configure_logging(self) -> None:
        """Install the root handler with this config's log_level and log_format."""
        setup_logging(self.log_level, self.log_format)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from LENDBOOK_* environment variables."""
        import json
        import os

        try:
            epsilon = Decimal(os.getenv("LENDBOOK_SETTLEMENT_EPSILON", "0.01"))
            max_retries = int(os.getenv("LENDBOOK_MAX_RETRIES", "3"))
            adjustment_sign = int(os.getenv("LENDBOOK_ADJUSTMENT_SIGN", "1"))
        except (InvalidOperation, ValueError) as e:
            raise ConfigurationError(f"Invalid LENDBOOK_* setting: {e}") from None

        custom_kinds_str = os.getenv("LENDBOOK_CUSTOM_FIRM_KINDS")
        try:
            custom_kinds = json.loads(custom_kinds_str) if custom_kinds_str else {}
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"LENDBOOK_CUSTOM_FIRM_KINDS is not valid JSON: {e}") from None
        if not isinstance(custom_kinds, dict):
            raise ConfigurationError("LENDBOOK_CUSTOM_FIRM_KINDS must be a JSON object")

        return cls(
            settlement_epsilon=epsilon,
            max_retries=max_retries,
            adjustment_sign=adjustment_sign,
            custom_firm_kinds={str(k): int(v) for k, v in custom_kinds.items()},
            enable_replay_cache=os.getenv("LENDBOOK_REPLAY_CACHE", "false").lower() == "true",
            log_level=os.getenv("LENDBOOK_LOG_LEVEL", "INFO"),
            log_format=os.getenv("LENDBOOK_LOG_FORMAT", "standard"),
        )
