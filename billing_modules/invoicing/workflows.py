"""
Invoicing Workflows.

The invoice status state machine, enumerated once.  Every legal
(status, action) pair is a Transition declaring the collaborator side
effects it requires; anything not listed is rejected by ``guard``.

    draft ──issue──> issued ──apply_payment──> partial ──apply_payment──> paid
      │                 │                          │                       │
      └───────cancel────┴──────────cancel──────────┴───────────────────────┘
                                                   v
                                               cancelled

Nothing ever transitions back to draft.  Cancelled accepts only delete.
Payment transitions carry balance guards; the one whose guard holds for the
new paid amount is taken.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from billing_kernel.exceptions import InvalidTransitionError
from billing_kernel.logging_config import get_logger
from billing_modules.invoicing.models import InvoiceAction, InvoiceStatus

logger = get_logger("modules.invoicing.workflows")


class SideEffect(str, Enum):
    """Work a transition obliges the service to perform."""
    RECOMPUTE_TOTALS = "recompute_totals"
    DECREMENT_STOCK = "decrement_stock"
    ALLOCATE_NUMBER = "allocate_number"
    RESTORE_STOCK = "restore_stock"


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class BalanceContext:
    """Paid amount after a payment command, as seen by the balance guards."""
    paid_amount: Decimal
    grand_total: Decimal
    epsilon: Decimal


@dataclass(frozen=True)
class Transition:
    """A valid state transition; ``to_state`` None means the invoice is removed."""
    from_state: InvoiceStatus
    to_state: InvoiceStatus | None
    action: InvoiceAction
    side_effects: tuple[SideEffect, ...] = ()
    guard: Guard | None = None
    requires_override: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: InvoiceStatus
    states: tuple[InvoiceStatus, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[InvoiceStatus, ...] = ()


@dataclass(frozen=True)
class TransitionDecision:
    """
    Outcome of ``guard`` for an allowed action.

    ``targets`` lists every status the action may lead to; payment actions
    have several and the final one comes from ``resolve_payment_status``.
    """
    from_state: InvoiceStatus
    action: InvoiceAction
    targets: frozenset[InvoiceStatus | None]
    side_effects: tuple[SideEffect, ...]
    requires_warning: bool = False
    transitions: tuple[Transition, ...] = ()

    def has(self, effect: SideEffect) -> bool:
        return effect in self.side_effects

    def settle(
        self,
        paid_amount: Decimal,
        grand_total: Decimal,
        epsilon: Decimal,
    ) -> InvoiceStatus:
        """
        Target of a payment action for the new ``paid_amount``.

        The status comes from ``resolve_payment_status``; the transition
        leading there must exist and its balance guard must hold.
        """
        target = resolve_payment_status(paid_amount, grand_total, epsilon)
        context = BalanceContext(paid_amount, grand_total, epsilon)
        for t in self.transitions:
            if t.to_state is target and (t.guard is None or evaluate_guard(t.guard, context)):
                return target
        raise InvalidTransitionError(
            self.from_state.value,
            self.action.value,
            f"paid amount {paid_amount} of {grand_total} would lead to '{target.value}'",
        )

    def check_target(self, to_state: InvoiceStatus | None) -> InvoiceStatus | None:
        if to_state not in self.targets:
            raise InvalidTransitionError(
                self.from_state.value,
                self.action.value,
                f"would lead to '{to_state.value if to_state else 'removed'}'",
            )
        return to_state


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

BALANCE_SETTLED = Guard(
    name="balance_settled",
    description="Paid amount reaches grand total within epsilon",
)

BALANCE_OPEN = Guard(
    name="balance_open",
    description="Paid amount is positive but short of grand total",
)

NOTHING_PAID = Guard(
    name="nothing_paid",
    description="No payment remains applied",
)

OVERRIDE_WITH_REASON = Guard(
    name="override_with_reason",
    description="Caller confirmed the deletion and gave a reason",
)

_GUARD_EVALUATORS: dict[str, Callable[[BalanceContext], bool]] = {
    NOTHING_PAID.name: lambda ctx: ctx.paid_amount <= 0,
    BALANCE_SETTLED.name: lambda ctx: (
        ctx.paid_amount > 0 and ctx.paid_amount >= ctx.grand_total - ctx.epsilon
    ),
    BALANCE_OPEN.name: lambda ctx: 0 < ctx.paid_amount < ctx.grand_total - ctx.epsilon,
}


def evaluate_guard(balance_guard: Guard, context: BalanceContext) -> bool:
    """
    Evaluate a balance guard against the new paid amount.

    Raises:
        KeyError: For a guard without a balance evaluator.  The override
            guard is checked by ``guard`` itself.
    """
    return _GUARD_EVALUATORS[balance_guard.name](context)


# -----------------------------------------------------------------------------
# Invoice Workflow
# -----------------------------------------------------------------------------

_D = InvoiceStatus.DRAFT
_I = InvoiceStatus.ISSUED
_PT = InvoiceStatus.PARTIAL
_PD = InvoiceStatus.PAID
_C = InvoiceStatus.CANCELLED

_CANCEL = (SideEffect.RESTORE_STOCK,)

INVOICE_WORKFLOW = Workflow(
    name="billing_invoice",
    description="Fiscal invoice lifecycle",
    initial_state=_D,
    states=(_D, _I, _PT, _PD, _C),
    transitions=(
        Transition(_D, _D, InvoiceAction.UPDATE, (SideEffect.RECOMPUTE_TOTALS,)),
        Transition(
            _D, _I, InvoiceAction.ISSUE,
            (SideEffect.DECREMENT_STOCK, SideEffect.ALLOCATE_NUMBER),
        ),
        Transition(_I, _PT, InvoiceAction.APPLY_PAYMENT, guard=BALANCE_OPEN),
        Transition(_I, _PD, InvoiceAction.APPLY_PAYMENT, guard=BALANCE_SETTLED),
        Transition(_PT, _PT, InvoiceAction.APPLY_PAYMENT, guard=BALANCE_OPEN),
        Transition(_PT, _PD, InvoiceAction.APPLY_PAYMENT, guard=BALANCE_SETTLED),
        Transition(_PT, _I, InvoiceAction.REMOVE_PAYMENT, guard=NOTHING_PAID),
        Transition(_PT, _PT, InvoiceAction.REMOVE_PAYMENT, guard=BALANCE_OPEN),
        Transition(_PD, _I, InvoiceAction.REMOVE_PAYMENT, guard=NOTHING_PAID),
        Transition(_PD, _PT, InvoiceAction.REMOVE_PAYMENT, guard=BALANCE_OPEN),
        Transition(_PD, _PD, InvoiceAction.REMOVE_PAYMENT, guard=BALANCE_SETTLED),
        Transition(_D, _C, InvoiceAction.CANCEL),
        Transition(_I, _C, InvoiceAction.CANCEL, _CANCEL),
        Transition(_PT, _C, InvoiceAction.CANCEL, _CANCEL),
        Transition(_PD, _C, InvoiceAction.CANCEL, _CANCEL),
        Transition(_D, None, InvoiceAction.DELETE),
        Transition(
            _I, None, InvoiceAction.DELETE, _CANCEL,
            guard=OVERRIDE_WITH_REASON, requires_override=True,
        ),
        Transition(
            _PT, None, InvoiceAction.DELETE, _CANCEL,
            guard=OVERRIDE_WITH_REASON, requires_override=True,
        ),
        Transition(
            _PD, None, InvoiceAction.DELETE, _CANCEL,
            guard=OVERRIDE_WITH_REASON, requires_override=True,
        ),
        Transition(
            _C, None, InvoiceAction.DELETE,
            guard=OVERRIDE_WITH_REASON, requires_override=True,
        ),
    ),
    terminal_states=(_C,),
)

logger.info(
    "invoice_workflow_registered",
    extra={
        "workflow_name": INVOICE_WORKFLOW.name,
        "state_count": len(INVOICE_WORKFLOW.states),
        "transition_count": len(INVOICE_WORKFLOW.transitions),
        "initial_state": INVOICE_WORKFLOW.initial_state.value,
    },
)


def _transitions_for(
    status: InvoiceStatus, action: InvoiceAction
) -> list[Transition]:
    return [
        t for t in INVOICE_WORKFLOW.transitions
        if t.from_state is status and t.action is action
    ]


def guard(
    status: InvoiceStatus | str,
    action: InvoiceAction | str,
    *,
    override: bool = False,
    reason: str | None = None,
) -> TransitionDecision:
    """
    Validate ``action`` from ``status``.

    Raises:
        InvalidTransitionError: If the workflow has no such transition, or the
            transition needs an override and ``override``/``reason`` are missing.
    """
    status = InvoiceStatus(status)
    action = InvoiceAction(action)

    candidates = _transitions_for(status, action)
    if not candidates:
        logger.warning(
            "invoice_transition_rejected",
            extra={"status": status.value, "action": action.value},
        )
        raise InvalidTransitionError(status.value, action.value)

    needs_override = any(t.requires_override for t in candidates)
    if needs_override and not (override and reason and reason.strip()):
        logger.warning(
            "invoice_transition_override_missing",
            extra={"status": status.value, "action": action.value},
        )
        raise InvalidTransitionError(
            status.value,
            action.value,
            "this requires an explicit override and a reason",
        )

    effects: list[SideEffect] = []
    for t in candidates:
        for effect in t.side_effects:
            if effect not in effects:
                effects.append(effect)

    return TransitionDecision(
        from_state=status,
        action=action,
        targets=frozenset(t.to_state for t in candidates),
        side_effects=tuple(effects),
        requires_warning=needs_override,
        transitions=tuple(candidates),
    )


def resolve_payment_status(
    paid_amount: Decimal,
    grand_total: Decimal,
    epsilon: Decimal,
) -> InvoiceStatus:
    """
    Status implied by a paid amount.

    Used by both payment application and payment removal so the two can
    never disagree.  The three balance guards are disjoint and cover every
    amount.
    """
    context = BalanceContext(paid_amount, grand_total, epsilon)
    if evaluate_guard(NOTHING_PAID, context):
        return InvoiceStatus.ISSUED
    if evaluate_guard(BALANCE_SETTLED, context):
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIAL
