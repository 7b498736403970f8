"""
Public, high-level helpers for running and talking to an x402 facilitator.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import requests
from fastapi import FastAPI

from .core.client import FacilitatorClient
from .core.config import FacilitatorConfig, FacilitatorParameters, load_facilitator_config
from .core.facilitator import Facilitator
from .core.ledger import Ledger, SolanaRpcLedger
from .server import create_app

__all__ = [
    "create_facilitator",
    "create_facilitator_app",
    "create_facilitator_client",
]


def _resolve_config(
    config: Optional[FacilitatorConfig],
    *,
    env_file: Optional[str],
    overrides: Optional[Mapping[str, str]],
    base: Optional[Mapping[str, str]],
    parameters: Optional[FacilitatorParameters],
    explicit: Mapping[str, Any],
) -> FacilitatorConfig:
    if config is not None:
        extras = (overrides, base, parameters, *explicit.values())
        if any(item is not None and item != {} for item in extras):
            raise ValueError(
                "Provide either a pre-built FacilitatorConfig or individual parameters, not both."
            )
        return config
    return load_facilitator_config(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        **{key: value for key, value in explicit.items() if value is not None},
    )


def create_facilitator(
    *,
    config: Optional[FacilitatorConfig] = None,
    ledger: Optional[Ledger] = None,
    session: Optional[requests.Session] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[FacilitatorParameters] = None,
    **explicit: Any,
) -> Facilitator:
    """
    Construct a :class:`Facilitator`.

    Callers can either supply a ready-made :class:`FacilitatorConfig` or let
    the helper assemble one from environment data. Without an explicit
    ``ledger`` a :class:`SolanaRpcLedger` pointed at ``config.rpc_url`` is used.
    """
    cfg = _resolve_config(
        config,
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        explicit=explicit,
    )
    if ledger is None:
        ledger = SolanaRpcLedger(
            cfg.rpc_url,
            session=session,
            commitment=cfg.commitment,
            timeout=cfg.broadcast_timeout_seconds,
        )
    return Facilitator(ledger, cfg)


def create_facilitator_app(
    *,
    facilitator: Optional[Facilitator] = None,
    sweep: bool = True,
    **kwargs: Any,
) -> FastAPI:
    """Build the HTTP app, creating the facilitator from ``kwargs`` when not given."""
    if facilitator is None:
        facilitator = create_facilitator(**kwargs)
    elif kwargs:
        raise ValueError("Provide either a Facilitator or parameters to build one, not both.")
    return create_app(facilitator, sweep=sweep)


def create_facilitator_client(
    *,
    base_url: Optional[str] = None,
    config: Optional[FacilitatorConfig] = None,
    session: Optional[requests.Session] = None,
    timeout: float = 30,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> FacilitatorClient:
    """
    Construct a :class:`FacilitatorClient`.

    ``base_url`` defaults to the host and port of the resolved configuration,
    and requests carry the configured network.
    """
    cfg = config or load_facilitator_config(env_file=env_file, overrides=overrides, base=base)
    url = base_url or f"http://{cfg.host}:{cfg.port}"
    return FacilitatorClient(url, session=session, timeout=timeout, network=cfg.network)
