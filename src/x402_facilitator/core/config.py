"""
Configuration objects and helpers for the x402 facilitator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .environment import EnvironmentValueError, FacilitatorEnvironment, build_environment
from .ledger import BroadcastOptions
from .transaction import decode_pubkey

__all__ = [
    "ConfigError",
    "FacilitatorConfig",
    "FacilitatorParameters",
    "load_facilitator_config",
]

NETWORKS = {
    "devnet": "solana-devnet",
    "testnet": "solana-testnet",
    "mainnet": "solana-mainnet",
}
SCHEMES = ("x402:sol", "x402:usdc")
COMMITMENTS = ("processed", "confirmed", "finalized")
UNKNOWN_FEE_PAYER = "unknown"

_PARAMETER_TO_ENV_KEY = {
    "rpc_url": "SOLANA_RPC_URL",
    "network": "SOLANA_NETWORK",
    "host": "HOST",
    "port": "PORT",
    "version": "X402_VERSION",
    "scheme": "X402_SCHEME",
    "fee_payer": "X402_FEE_PAYER",
    "cache_ttl_seconds": "X402_CACHE_TTL_SECONDS",
    "settled_grace_seconds": "X402_SETTLED_GRACE_SECONDS",
    "sweep_interval_seconds": "X402_SWEEP_INTERVAL_SECONDS",
    "broadcast_timeout_seconds": "X402_BROADCAST_TIMEOUT_SECONDS",
    "skip_preflight": "X402_SKIP_PREFLIGHT",
    "commitment": "X402_COMMITMENT",
    "refresh_blockhash": "X402_REFRESH_BLOCKHASH",
    "kora_rpc_enabled": "KORA_RPC_ENABLED",
}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ConfigError(Exception):
    """Raised when the supplied configuration is invalid."""


@dataclass(frozen=True)
class FacilitatorParameters:
    """
    Explicit parameter bundle for constructing :class:`FacilitatorConfig`.

    Callers can either instantiate this helper or pass the individual keyword
    arguments directly to :func:`load_facilitator_config`.
    """

    rpc_url: Optional[str] = None
    network: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int | str] = None
    version: Optional[str] = None
    scheme: Optional[str] = None
    fee_payer: Optional[str] = None
    cache_ttl_seconds: Optional[float | str] = None
    settled_grace_seconds: Optional[float | str] = None
    sweep_interval_seconds: Optional[float | str] = None
    broadcast_timeout_seconds: Optional[float | str] = None
    skip_preflight: Optional[bool | str] = None
    commitment: Optional[str] = None
    refresh_blockhash: Optional[bool | str] = None
    kora_rpc_enabled: Optional[bool | str] = None

    def as_overrides(self) -> Dict[str, str]:
        overrides: Dict[str, str] = {}
        for field_name, env_key in _PARAMETER_TO_ENV_KEY.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            overrides[env_key] = _stringify(value)
        return overrides


def _normalize_network(raw: str) -> str:
    value = raw.strip().lower()
    if value in NETWORKS:
        return NETWORKS[value]
    if value in NETWORKS.values():
        return value
    raise ConfigError(
        f"SOLANA_NETWORK must be one of {', '.join(NETWORKS)}, got '{raw}'"
    )


def _normalize_fee_payer(raw: str) -> str:
    value = raw.strip()
    if not value or value == UNKNOWN_FEE_PAYER:
        return UNKNOWN_FEE_PAYER
    try:
        decode_pubkey(value)
    except ValueError as exc:
        raise ConfigError(f"X402_FEE_PAYER is not a valid Solana address: {exc}") from exc
    return value


def _positive(value: float, key: str) -> float:
    if value <= 0:
        raise ConfigError(f"{key} must be greater than zero")
    return value


@dataclass(frozen=True)
class FacilitatorConfig:
    rpc_url: str = "https://api.devnet.solana.com"
    network: str = "solana-devnet"
    host: str = "localhost"
    port: int = 3000
    version: str = "1.0.0"
    scheme: str = "x402:sol"
    fee_payer: str = UNKNOWN_FEE_PAYER
    cache_ttl_seconds: float = 300.0
    settled_grace_seconds: float = 600.0
    sweep_interval_seconds: float = 30.0
    broadcast_timeout_seconds: float = 30.0
    skip_preflight: bool = False
    commitment: str = "confirmed"
    # Applies to unsigned transactions only; signed bytes keep their blockhash.
    refresh_blockhash: bool = True
    kora_rpc_enabled: bool = False

    def broadcast_options(self) -> BroadcastOptions:
        return BroadcastOptions(
            skip_preflight=self.skip_preflight,
            commitment=self.commitment,
            timeout=self.broadcast_timeout_seconds,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "FacilitatorConfig":
        env = FacilitatorEnvironment(variables=values)
        defaults = cls()
        try:
            rpc_url = env.get_str("SOLANA_RPC_URL", defaults.rpc_url).rstrip("/")
            network = _normalize_network(env.get_str("SOLANA_NETWORK", "devnet"))
            host = env.get_str("HOST", defaults.host)
            port = env.get_int("PORT", defaults.port)
            version = env.get_str("X402_VERSION", defaults.version)
            scheme = env.get_str("X402_SCHEME", defaults.scheme)
            fee_payer = _normalize_fee_payer(env.get_str("X402_FEE_PAYER", UNKNOWN_FEE_PAYER))
            cache_ttl = _positive(
                env.get_float("X402_CACHE_TTL_SECONDS", defaults.cache_ttl_seconds),
                "X402_CACHE_TTL_SECONDS",
            )
            settled_grace = env.get_float(
                "X402_SETTLED_GRACE_SECONDS", defaults.settled_grace_seconds
            )
            sweep_interval = _positive(
                env.get_float("X402_SWEEP_INTERVAL_SECONDS", defaults.sweep_interval_seconds),
                "X402_SWEEP_INTERVAL_SECONDS",
            )
            broadcast_timeout = _positive(
                env.get_float(
                    "X402_BROADCAST_TIMEOUT_SECONDS", defaults.broadcast_timeout_seconds
                ),
                "X402_BROADCAST_TIMEOUT_SECONDS",
            )
            skip_preflight = env.get_bool("X402_SKIP_PREFLIGHT", defaults.skip_preflight)
            commitment = env.get_str("X402_COMMITMENT", defaults.commitment).lower()
            refresh_blockhash = env.get_bool(
                "X402_REFRESH_BLOCKHASH", defaults.refresh_blockhash
            )
            kora_rpc_enabled = env.get_bool("KORA_RPC_ENABLED", defaults.kora_rpc_enabled)
        except EnvironmentValueError as exc:
            raise ConfigError(str(exc)) from exc

        if not 0 < port < 65536:
            raise ConfigError(f"PORT must be between 1 and 65535, got {port}")
        if scheme not in SCHEMES:
            raise ConfigError(f"X402_SCHEME must be one of {', '.join(SCHEMES)}, got '{scheme}'")
        if commitment not in COMMITMENTS:
            raise ConfigError(
                f"X402_COMMITMENT must be one of {', '.join(COMMITMENTS)}, got '{commitment}'"
            )
        if settled_grace < 0:
            raise ConfigError("X402_SETTLED_GRACE_SECONDS must not be negative")

        return cls(
            rpc_url=rpc_url,
            network=network,
            host=host,
            port=port,
            version=version,
            scheme=scheme,
            fee_payer=fee_payer,
            cache_ttl_seconds=cache_ttl,
            settled_grace_seconds=settled_grace,
            sweep_interval_seconds=sweep_interval,
            broadcast_timeout_seconds=broadcast_timeout,
            skip_preflight=skip_preflight,
            commitment=commitment,
            refresh_blockhash=refresh_blockhash,
            kora_rpc_enabled=kora_rpc_enabled,
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        parameters: Optional[FacilitatorParameters] = None,
        **explicit: Any,
    ) -> "FacilitatorConfig":
        """
        Build a config from layered sources. Lowest first: ``env_file``,
        ``base`` (default :data:`os.environ`), ``overrides``, ``parameters``
        and finally keyword arguments.
        """
        unknown = set(explicit) - set(_PARAMETER_TO_ENV_KEY)
        if unknown:
            raise TypeError(f"Unknown facilitator parameter(s): {', '.join(sorted(unknown))}")

        merged_overrides = dict(overrides or {})
        if parameters is not None:
            merged_overrides.update(parameters.as_overrides())
        merged_overrides.update(FacilitatorParameters(**explicit).as_overrides())

        environment = build_environment(
            env_file=env_file,
            base=base,
            overrides=merged_overrides,
        )
        return cls.from_mapping(environment.variables)


def load_facilitator_config(
    *,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[FacilitatorParameters] = None,
    **explicit: Any,
) -> FacilitatorConfig:
    """
    Convenience wrapper that mirrors :meth:`FacilitatorConfig.from_env`.

    Keyword arguments are validated against the known parameter names and
    applied last, after ``overrides`` and ``parameters``.
    """
    return FacilitatorConfig.from_env(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        **explicit,
    )
