"""
Shared fixtures: signed delegations, fake collaborators and a retry policy
that never sleeps.
"""

from typing import Callable, Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from dca_engine.config import DEFAULT_ROUTER_ALLOWLIST, settings
from dca_engine.core.delegation.models import (
    ALLOWED_METHODS_ENFORCER,
    ALLOWED_TARGETS_ENFORCER,
    LIMITED_CALLS_ENFORCER,
    TIMESTAMP_ENFORCER,
    Delegation,
    EnforcerCaveat,
    Execution,
)
from dca_engine.core.execution.models import SubmissionMode, SubmissionResult
from dca_engine.core.recovery import RetryPolicy

NOW = 1_760_000_000
DAY = 86_400

OWNER = "0x1111111111111111111111111111111111111111"
SMART_ACCOUNT = "0x2222222222222222222222222222222222222222"
OPERATOR = "0x3333333333333333333333333333333333333333"
ROUTER = DEFAULT_ROUTER_ALLOWLIST[0]

USDC = settings.stablecoin_address
WETH = settings.volatile_address

EXECUTE_SELECTOR = "0x3593564c"   # Universal Router execute(bytes,bytes[],uint256)
TRANSFER_SELECTOR = "0xa9059cbb"


def timestamp_terms(valid_after: int, valid_until: int) -> str:
    return "0x" + f"{valid_after:032x}" + f"{valid_until:032x}"


def targets_terms(targets: Sequence[str]) -> str:
    return "0x" + "".join(t.lower()[2:] for t in targets)


def methods_terms(selectors: Sequence[str]) -> str:
    return "0x" + "".join(s[2:] for s in selectors)


def limited_calls_terms(max_calls: int) -> str:
    return "0x" + f"{max_calls:064x}"


def make_delegation(
    smart_account: str = SMART_ACCOUNT,
    owner: str = OWNER,
    delegate: str = OPERATOR,
    valid_after: int = NOW - DAY,
    valid_until: int = NOW + 30 * DAY,
    targets: Optional[Sequence[str]] = None,
    selectors: Optional[Sequence[str]] = None,
    max_calls: Optional[int] = None,
    calls_used: int = 0,
    signature: str = "0x" + "ab" * 65,
    max_amount_per_swap: Optional[int] = None,
    caveats: Optional[List[EnforcerCaveat]] = None,
) -> Delegation:
    """A signed delegation scoped to the router plus both tokens by default."""
    if caveats is None:
        caveats = [
            EnforcerCaveat(TIMESTAMP_ENFORCER, timestamp_terms(valid_after, valid_until)),
            EnforcerCaveat(ALLOWED_TARGETS_ENFORCER, targets_terms(targets or [ROUTER, USDC, WETH])),
            EnforcerCaveat(
                ALLOWED_METHODS_ENFORCER,
                methods_terms(selectors or [EXECUTE_SELECTOR, TRANSFER_SELECTOR]),
            ),
        ]
        if max_calls is not None:
            caveats.append(EnforcerCaveat(LIMITED_CALLS_ENFORCER, limited_calls_terms(max_calls)))
    return Delegation(
        owner=owner,
        smart_account=smart_account,
        delegate=delegate,
        signature=signature,
        enforcer_caveats=tuple(caveats),
        calls_used=calls_used,
        max_amount_per_swap=max_amount_per_swap,
    )


def swap_call(target: str = ROUTER, selector: str = EXECUTE_SELECTOR) -> Execution:
    return Execution(target=target, value=0, call_data=selector + "00" * 32)


class FakeSubmitter:
    """Records every submission and answers from a queue of results."""

    def __init__(
        self,
        results: Optional[List[SubmissionResult]] = None,
        operator_results: Optional[List[SubmissionResult]] = None,
        mode: SubmissionMode = SubmissionMode.DIRECT,
    ):
        self.mode = mode
        self.signer = MagicMock(operator_address=OPERATOR)
        self.results = list(results or [])
        self.operator_results = list(operator_results or [])
        self.submitted: List[Tuple[List[Tuple[Delegation, Execution]], str]] = []
        self.operator_calls: List[Tuple[Execution, str]] = []
        self.prechecks: List[Callable[[], None]] = []
        # Settlement answers by reference; missing references are still unsettled
        self.settled: Dict[str, Optional[bool]] = {}

    @property
    def delegate_address(self) -> str:
        return OPERATOR

    async def submit(self, redemptions, label: str, precheck: Optional[Callable[[], None]] = None) -> SubmissionResult:
        self.submitted.append((list(redemptions), label))
        if precheck is not None:
            self.prechecks.append(precheck)
        if self.results:
            return self.results.pop(0)
        return SubmissionResult(success=True, tx_hash=f"0x{len(self.submitted):064x}")

    async def submit_operator_call(self, call: Execution, label: str) -> SubmissionResult:
        self.operator_calls.append((call, label))
        if self.operator_results:
            return self.operator_results.pop(0)
        return SubmissionResult(success=True, tx_hash=f"0x{100 + len(self.operator_calls):064x}")

    async def settlement_status(self, reference: str) -> Optional[bool]:
        return self.settled.get(reference)

    @property
    def labels(self) -> List[str]:
        return [label for _, label in self.submitted]


def fake_rpc(balances: Optional[Dict[str, int]] = None, native_balance: int = 10**18, allowance: int = 0) -> MagicMock:
    """Chain RPC double. ``balances`` maps lowercased smart account to the token balance returned."""
    balances = {k.lower(): v for k, v in (balances or {}).items()}
    rpc = MagicMock()

    async def get_erc20_balance(token: str, owner: str) -> int:
        return balances.get(owner.lower(), 0)

    rpc.get_erc20_balance = AsyncMock(side_effect=get_erc20_balance)
    rpc.get_native_balance = AsyncMock(return_value=native_balance)
    rpc.get_erc20_allowance = AsyncMock(return_value=allowance)
    return rpc


@pytest.fixture
def no_wait_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0, jitter_factor=0)


@pytest.fixture
def delegation() -> Delegation:
    return make_delegation()


@pytest.fixture
def delegation_factory():
    return make_delegation


@pytest.fixture
def clock():
    return lambda: float(NOW)
