"""
Decorator that puts a handler behind an x402 payment.

    @x402(price=1_000_000, recipient=TREASURY)
    def premium_compute(ctx, *args):
        ...

The wrapped handler receives a :class:`GatedContext` describing the executing
transaction and the index of the gated call inside it. The payment is
checked against the instruction immediately before that index on every call.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from .policy import DEFAULT_PRICE, FacilitatorFee, PaymentPolicy, Transfer, validate_gated_call
from .transaction import Instruction, ParsedTransaction

__all__ = ["GatedContext", "x402"]

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(frozen=True)
class GatedContext:
    transaction: ParsedTransaction
    instruction_index: int
    payment: Optional[Transfer] = None

    @property
    def instruction(self) -> Instruction:
        return self.transaction.instructions[self.instruction_index]

    @property
    def payer(self) -> Optional[str]:
        if self.payment is not None:
            return self.payment.owner
        return self.transaction.fee_payer


def x402(
    *,
    price: int = DEFAULT_PRICE,
    recipient: Optional[str] = None,
    asset: Optional[str] = None,
    facilitator_fee: Optional[FacilitatorFee] = None,
    policy: Optional[PaymentPolicy] = None,
) -> Callable[[F], F]:
    """
    Gate a handler behind ``policy`` (or a policy built from the keyword arguments).

    Raises :class:`ValueError` at decoration time if neither a policy nor a
    recipient is given. Violations raised at call time propagate unchanged.
    """
    if policy is None:
        if recipient is None:
            raise ValueError("x402 needs a recipient or a PaymentPolicy")
        policy = PaymentPolicy(
            price=price,
            recipient=recipient,
            asset=asset,
            facilitator_fee=facilitator_fee,
        )
    resolved = policy

    def decorator(handler: F) -> F:
        @functools.wraps(handler)
        def wrapper(ctx: GatedContext, *args: Any, **kwargs: Any) -> Any:
            payment = validate_gated_call(ctx.transaction, ctx.instruction_index, resolved)
            logging.debug(
                "[x402] %s paid %s by %s",
                handler.__name__,
                payment.amount,
                payment.owner,
            )
            paid = GatedContext(ctx.transaction, ctx.instruction_index, payment)
            return handler(paid, *args, **kwargs)

        wrapper.payment_policy = resolved  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
