"""
dkgincentives/protocol/delegation.py

Delegated staking vault.

Each node runs a shares vault over its stake:
- deposit mints shares (1:1 for the first deposit, otherwise
  amount * total_shares // node_stake)
- withdrawal burns shares at once and reduces the node stake, but releases
  the tokens only after the withdrawal delay; until then the request can be
  cancelled
- reward credits raise the node stake without minting shares, which is what
  makes every existing share worth more

A configurable operator fee is split off each reward credit before it
reaches the pool; the operator may withdraw it after the same delay or
restake it, which mints shares like a deposit.

Rolling rewards:
    Rewards are never pushed to delegators. Every credit is appended to a
    per-node, per-epoch log together with the share supply at that moment.
    Each delegator keeps a cursor (last claimed epoch + position inside the
    next epoch's log). A claim sums net * shares // total_shares over the
    unread log entries. Claims go strictly oldest epoch first; claiming an
    older epoch adds to rolling_rewards, claiming the previous epoch flushes
    rolling_rewards into cumulative_earned. A delegator must have claimed
    through the previous epoch before changing their shares; at that point
    the current epoch's entries are settled into a pending amount so later
    share changes don't rewrite history.

    Value already moved into the node stake when the reward was credited;
    claims only attribute it to delegators.
"""

import copy
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from ..config import BASIS_POINTS, SCALE18, ProtocolParameters
from ..errors import (
    AlreadyClaimed,
    AmountExceedsOperatorFeeBalance,
    EpochNotFinalized,
    InvalidOperatorFee,
    MaximumStakeExceeded,
    MustClaimOlderEpochsFirst,
    PreviousEpochsNotClaimed,
    ProfileDoesntExist,
    ShardingTableIsFull,
    WithdrawalExceedsStake,
    WithdrawalPeriodPending,
    WithdrawalWasntInitiated,
    ZeroAsk,
    ZeroTokenAmount,
)

if TYPE_CHECKING:
    from ..chronos import Chronos
    from ..identity.registry import IdentityRegistry
    from .market import MarketState
    from .sharding import ShardingTable

logger = logging.getLogger("dkgincentives.protocol.delegation")


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class WithdrawalRequest:
    """Tokens waiting out the withdrawal delay."""
    amount: int
    release_at: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RewardCredit:
    """One reward credited to a node, as logged for delegator claims."""
    epoch: int
    gross: int
    operator_fee: int
    net: int
    total_shares: int

    def delegator_part(self, shares: int) -> int:
        if self.total_shares == 0:
            return 0
        return self.net * shares // self.total_shares


@dataclass
class DelegatorRewardState:
    """A delegator's claim cursor on one node."""
    last_claimed_epoch: int = 0
    epoch_position: int = 0         # log entries of last_claimed_epoch + 1 already settled
    pending: int = 0                # settled but unclaimed reward of last_claimed_epoch + 1
    rolling_rewards: int = 0
    cumulative_earned: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class NodeVault:
    """Per-node vault state."""
    identity_id: int
    total_shares: int = 0
    shares: Dict[str, int] = field(default_factory=dict)
    operator_fee_schedule: List[Tuple[int, int]] = field(default_factory=list)    # (effective_epoch, bps)
    operator_fee_balance: int = 0
    operator_fee_earned: int = 0
    operator_fee_paid_out: int = 0
    operator_fee_withdrawal: Optional[WithdrawalRequest] = None
    withdrawals: Dict[str, WithdrawalRequest] = field(default_factory=dict)
    credits: Dict[int, List[RewardCredit]] = field(default_factory=lambda: defaultdict(list))
    reward_states: Dict[str, DelegatorRewardState] = field(default_factory=dict)

    def operator_fee_at(self, epoch: int) -> int:
        fee = 0
        for effective_epoch, bps in self.operator_fee_schedule:
            if effective_epoch <= epoch:
                fee = bps
        return fee

    def net_epoch_reward(self, epoch: int) -> int:
        return sum(credit.net for credit in self.credits.get(epoch, ()))

    def gross_epoch_reward(self, epoch: int) -> int:
        return sum(credit.gross for credit in self.credits.get(epoch, ()))


# ============================================================================
# VAULT
# ============================================================================

class DelegationVault:
    """
    Manages node profiles, delegated stake, operator fees and reward claims.

    Node stake itself lives in MarketState so the ask aggregate is updated
    in the same step as every stake change.

    Usage:
        vault = DelegationVault(params, identities, market, chronos, sharding=table)
        node = vault.create_profile(b"node-id", admin="0xAdmin", ask=10, operator_fee=1000)
        vault.deposit(node, "0xDelegator", 60_000 * TOKEN)
        vault.credit_reward(node, 500)
        ...
        vault.claim_delegator_rewards(node, epoch, "0xDelegator")
    """

    def __init__(
        self,
        params: ProtocolParameters,
        identities: "IdentityRegistry",
        market: "MarketState",
        chronos: "Chronos",
        sharding: Optional["ShardingTable"] = None,
        token: Any = None,
        lock: Optional[threading.RLock] = None,
    ):
        """
        Initialize DelegationVault.

        Args:
            params: Protocol parameters
            identities: Identity registry (admins, ring positions)
            market: Stake/ask ledger
            chronos: Epoch clock
            sharding: Sharding table, checked for capacity before stake grows
            token: Optional value-transfer collaborator with
                receive(sender, amount) and send(recipient, amount)
            lock: Shared engine lock
        """
        self.params = params
        self.identities = identities
        self.market = market
        self.chronos = chronos
        self.sharding = sharding
        self.token = token
        self._lock = lock or threading.RLock()

        self._vaults: Dict[int, NodeVault] = {}

        # Callbacks
        self._on_reward_credited: List[Callable[[int, RewardCredit], None]] = []
        self._on_stake_changed: List[Callable[[int, str, int], None]] = []

    def on_reward_credited(self, callback: Callable[[int, RewardCredit], None]) -> None:
        self._on_reward_credited.append(callback)

    def on_stake_changed(self, callback: Callable[[int, str, int], None]) -> None:
        """Register callback(identity_id, delegator, new_node_stake)."""
        self._on_stake_changed.append(callback)

    def _notify(self, callbacks: List[Callable], *args) -> None:
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Vault callback error: {e}")

    def _vault(self, identity_id: int) -> NodeVault:
        vault = self._vaults.get(identity_id)
        if vault is None:
            raise ProfileDoesntExist(identity_id)
        return vault

    # ========================================================================
    # PROFILES
    # ========================================================================

    def create_profile(
        self,
        node_id: bytes,
        admin: str,
        ask: int,
        operator_fee: int = 0,
        name: str = "",
    ) -> int:
        """
        Register a node and open its vault.

        Returns:
            The new identity id
        """
        if ask <= 0:
            raise ZeroAsk("Ask must be greater than zero")
        self._check_operator_fee(operator_fee)
        with self._lock:
            identity_id = self.identities.register(node_id, admin, name)
            self.market.add_node(identity_id, ask=ask)
            self._vaults[identity_id] = NodeVault(
                identity_id=identity_id,
                operator_fee_schedule=[(0, operator_fee)],
            )
        logger.info(f"Profile {identity_id} created (ask {ask}, fee {operator_fee} bps)")
        return identity_id

    def has_profile(self, identity_id: int) -> bool:
        return identity_id in self._vaults

    def set_ask(self, identity_id: int, caller: str, ask: int) -> None:
        with self._lock:
            self._vault(identity_id)
            self.identities.require_admin(identity_id, caller)
            self.market.set_ask(identity_id, ask)

    def _check_operator_fee(self, fee: int) -> None:
        if not 0 <= fee <= self.params.max_operator_fee:
            raise InvalidOperatorFee(f"Operator fee {fee} outside 0..{self.params.max_operator_fee} bps")

    def set_operator_fee(self, identity_id: int, caller: str, fee: int) -> int:
        """
        Schedule a new operator fee (basis points) starting next epoch.

        Returns:
            The epoch from which the fee applies
        """
        self._check_operator_fee(fee)
        with self._lock:
            vault = self._vault(identity_id)
            self.identities.require_admin(identity_id, caller)
            effective = self.chronos.get_current_epoch() + 1
            vault.operator_fee_schedule = [
                entry for entry in vault.operator_fee_schedule if entry[0] < effective
            ]
            vault.operator_fee_schedule.append((effective, fee))
        logger.info(f"Node {identity_id} operator fee -> {fee} bps from epoch {effective}")
        return effective

    def get_operator_fee(self, identity_id: int, epoch: Optional[int] = None) -> int:
        vault = self._vault(identity_id)
        return vault.operator_fee_at(self.chronos.get_current_epoch() if epoch is None else epoch)

    # ========================================================================
    # STAKE CHECKS
    # ========================================================================

    def _check_stake_increase(self, identity_id: int, amount: int) -> int:
        """Validate a stake increase; returns the resulting stake."""
        stake = self.market.get_node_stake(identity_id)
        new_stake = stake + amount
        if new_stake > self.params.maximum_stake:
            raise MaximumStakeExceeded(identity_id, new_stake, self.params.maximum_stake)
        if (self.sharding is not None
                and stake < self.params.minimum_stake <= new_stake
                and not self.sharding.can_insert(identity_id)):
            raise ShardingTableIsFull(
                f"Sharding table is full ({self.sharding.size_limit}); node {identity_id} cannot activate"
            )
        return new_stake

    def _mint_amount(self, vault: NodeVault, amount: int) -> int:
        stake = self.market.get_node_stake(vault.identity_id)
        if vault.total_shares == 0 or stake == 0:
            return amount
        return amount * vault.total_shares // stake

    # ========================================================================
    # ROLLING REWARD CURSOR
    # ========================================================================

    def _epoch_reward(self, vault: NodeVault, delegator: str, state: DelegatorRewardState, epoch: int) -> int:
        """Unclaimed reward of one epoch at the delegator's current share balance."""
        shares = vault.shares.get(delegator, 0)
        credits = vault.credits.get(epoch, ())
        if epoch == state.last_claimed_epoch + 1:
            unread = credits[state.epoch_position:]
            carried = state.pending
        else:
            unread = credits
            carried = 0
        return carried + sum(credit.delegator_part(shares) for credit in unread)

    def _advanced(self, vault: NodeVault, delegator: str, state: DelegatorRewardState,
                  current_epoch: int) -> DelegatorRewardState:
        """Copy of state with every reward-less finalized epoch skipped."""
        state = replace(state)
        while state.last_claimed_epoch + 1 < current_epoch:
            epoch = state.last_claimed_epoch + 1
            if self._epoch_reward(vault, delegator, state, epoch) != 0:
                break
            state.last_claimed_epoch = epoch
            state.epoch_position = 0
            state.pending = 0
            if epoch == current_epoch - 1 and state.rolling_rewards:
                state.cumulative_earned += state.rolling_rewards
                state.rolling_rewards = 0
        return state

    def _prepare_share_change(self, vault: NodeVault, delegator: str) -> Optional[DelegatorRewardState]:
        """
        Check the delegator may change shares now.

        Returns:
            Advanced and current-epoch-settled state to store once the change
            is applied, or None for a first-time delegator
        """
        state = vault.reward_states.get(delegator)
        if state is None:
            return None
        current = self.chronos.get_current_epoch()
        state = self._advanced(vault, delegator, state, current)
        if state.last_claimed_epoch < current - 1:
            raise PreviousEpochsNotClaimed(state.last_claimed_epoch, current - 1)

        # Settle what the current epoch has logged so far at the old balance
        credits = vault.credits.get(current, ())
        shares = vault.shares.get(delegator, 0)
        state.pending += sum(credit.delegator_part(shares) for credit in credits[state.epoch_position:])
        state.epoch_position = len(credits)
        return state

    def _store_state(self, vault: NodeVault, delegator: str, state: Optional[DelegatorRewardState]) -> None:
        if state is None:
            current = self.chronos.get_current_epoch()
            state = DelegatorRewardState(
                last_claimed_epoch=current - 1,
                epoch_position=len(vault.credits.get(current, ())),
            )
        vault.reward_states[delegator] = state

    # ========================================================================
    # DEPOSITS / WITHDRAWALS
    # ========================================================================

    def deposit(self, identity_id: int, delegator: str, amount: int) -> int:
        """
        Stake tokens into a node's vault.

        Returns:
            Shares minted

        Raises:
            ZeroTokenAmount, ProfileDoesntExist, MaximumStakeExceeded,
            ShardingTableIsFull, PreviousEpochsNotClaimed
        """
        if amount <= 0:
            raise ZeroTokenAmount("Deposit amount must be greater than zero")
        with self._lock:
            vault = self._vault(identity_id)
            new_stake = self._check_stake_increase(identity_id, amount)
            state = self._prepare_share_change(vault, delegator)
            minted = self._mint_amount(vault, amount)
            if minted == 0:
                raise ZeroTokenAmount(f"Deposit of {amount} is too small to mint shares")

            if self.token is not None:
                self.token.receive(delegator, amount)

            self._store_state(vault, delegator, state)
            vault.shares[delegator] = vault.shares.get(delegator, 0) + minted
            vault.total_shares += minted
            self.market.set_stake(identity_id, new_stake)

        logger.debug(f"Delegator {delegator} deposited {amount} into node {identity_id} ({minted} shares)")
        self._notify(self._on_stake_changed, identity_id, delegator, new_stake)
        return minted

    def request_withdrawal(self, identity_id: int, delegator: str, shares: int) -> WithdrawalRequest:
        """
        Burn shares and start the withdrawal delay for their value.

        A second request before finalization adds to the pending amount and
        restarts the delay.
        """
        if shares <= 0:
            raise ZeroTokenAmount("Withdrawal shares must be greater than zero")
        with self._lock:
            vault = self._vault(identity_id)
            held = vault.shares.get(delegator, 0)
            if shares > held:
                raise WithdrawalExceedsStake(f"Delegator {delegator} holds {held} shares, requested {shares}")
            state = self._prepare_share_change(vault, delegator)

            stake = self.market.get_node_stake(identity_id)
            eligible = shares * stake // vault.total_shares
            release_at = self.chronos.now() + self.params.stake_withdrawal_delay

            self._store_state(vault, delegator, state)
            vault.shares[delegator] = held - shares
            vault.total_shares -= shares
            self.market.set_stake(identity_id, stake - eligible)

            request = vault.withdrawals.get(delegator)
            if request is None:
                request = WithdrawalRequest(amount=eligible, release_at=release_at)
                vault.withdrawals[delegator] = request
            else:
                request.amount += eligible
                request.release_at = release_at

        logger.debug(
            f"Delegator {delegator} requested withdrawal of {eligible} from node {identity_id} "
            f"(release at {release_at})"
        )
        self._notify(self._on_stake_changed, identity_id, delegator, stake - eligible)
        return request

    def cancel_withdrawal(self, identity_id: int, delegator: str) -> int:
        """
        Restake a pending withdrawal.

        Only as much as fits under the maximum stake is restaked; the rest
        stays pending.

        Returns:
            Shares minted
        """
        with self._lock:
            vault = self._vault(identity_id)
            request = vault.withdrawals.get(delegator)
            if request is None:
                raise WithdrawalWasntInitiated(f"No withdrawal pending for {delegator} on node {identity_id}")

            stake = self.market.get_node_stake(identity_id)
            restake = min(request.amount, self.params.maximum_stake - stake)
            if restake <= 0:
                raise MaximumStakeExceeded(identity_id, stake + request.amount, self.params.maximum_stake)
            new_stake = self._check_stake_increase(identity_id, restake)
            state = self._prepare_share_change(vault, delegator)
            minted = self._mint_amount(vault, restake)

            self._store_state(vault, delegator, state)
            vault.shares[delegator] = vault.shares.get(delegator, 0) + minted
            vault.total_shares += minted
            self.market.set_stake(identity_id, new_stake)
            request.amount -= restake
            if request.amount == 0:
                del vault.withdrawals[delegator]

        logger.debug(f"Delegator {delegator} cancelled withdrawal, restaked {restake} on node {identity_id}")
        self._notify(self._on_stake_changed, identity_id, delegator, new_stake)
        return minted

    def finalize_withdrawal(self, identity_id: int, delegator: str) -> int:
        """Release a withdrawal once its delay has elapsed; returns the amount."""
        with self._lock:
            vault = self._vault(identity_id)
            request = vault.withdrawals.get(delegator)
            if request is None:
                raise WithdrawalWasntInitiated(f"No withdrawal pending for {delegator} on node {identity_id}")
            now = self.chronos.now()
            if now < request.release_at:
                raise WithdrawalPeriodPending(request.release_at, now)

            if self.token is not None:
                self.token.send(delegator, request.amount)
            del vault.withdrawals[delegator]

        logger.info(f"Withdrawal of {request.amount} finalized for {delegator} on node {identity_id}")
        return request.amount

    def get_withdrawal_request(self, identity_id: int, delegator: str) -> Optional[WithdrawalRequest]:
        return self._vault(identity_id).withdrawals.get(delegator)

    # ========================================================================
    # REWARDS
    # ========================================================================

    def credit_reward(self, identity_id: int, amount: int, epoch: Optional[int] = None) -> RewardCredit:
        """
        Credit a reward to a node.

        The operator fee is diverted first; the rest raises the node stake
        without minting shares. With no shares outstanding the whole reward
        goes to the operator fee balance.
        """
        if amount < 0:
            raise ValueError(f"Reward cannot be negative: {amount}")
        with self._lock:
            vault = self._vault(identity_id)
            epoch = self.chronos.get_current_epoch() if epoch is None else epoch

            if vault.total_shares == 0:
                fee = amount
            else:
                fee = amount * vault.operator_fee_at(epoch) // BASIS_POINTS
            net = amount - fee
            credit = RewardCredit(
                epoch=epoch,
                gross=amount,
                operator_fee=fee,
                net=net,
                total_shares=vault.total_shares,
            )

            vault.operator_fee_balance += fee
            vault.operator_fee_earned += fee
            vault.credits[epoch].append(credit)
            if net:
                self.market.add_stake(identity_id, net)

        logger.debug(f"Node {identity_id} credited {amount} in epoch {epoch} (fee {fee}, net {net})")
        self._notify(self._on_reward_credited, identity_id, credit)
        return credit

    def get_net_node_epoch_rewards(self, identity_id: int, epoch: int) -> int:
        return self._vault(identity_id).net_epoch_reward(epoch)

    def get_node_epoch_rewards(self, identity_id: int, epoch: int) -> int:
        return self._vault(identity_id).gross_epoch_reward(epoch)

    def claim_delegator_rewards(self, identity_id: int, epoch: int, delegator: str) -> int:
        """
        Claim a delegator's share of one finalized epoch's net rewards.

        Returns:
            Reward attributed to the delegator for that epoch

        Raises:
            EpochNotFinalized, AlreadyClaimed, MustClaimOlderEpochsFirst
        """
        with self._lock:
            vault = self._vault(identity_id)
            current = self.chronos.get_current_epoch()
            if epoch >= current:
                raise EpochNotFinalized(f"Epoch {epoch} is not finalized (current {current})")

            state = vault.reward_states.get(delegator)
            if state is None:
                raise AlreadyClaimed(f"Delegator {delegator} has nothing to claim on node {identity_id}")
            state = self._advanced(vault, delegator, state, current)
            if epoch <= state.last_claimed_epoch:
                raise AlreadyClaimed(
                    f"Already claimed all finalised epochs up to {state.last_claimed_epoch} "
                    f"for {delegator} on node {identity_id}"
                )
            if epoch > state.last_claimed_epoch + 1:
                raise MustClaimOlderEpochsFirst(state.last_claimed_epoch + 1, epoch)

            reward = self._epoch_reward(vault, delegator, state, epoch)
            state.last_claimed_epoch = epoch
            state.epoch_position = 0
            state.pending = 0
            if epoch == current - 1:
                state.cumulative_earned += state.rolling_rewards + reward
                state.rolling_rewards = 0
            else:
                state.rolling_rewards += reward
            vault.reward_states[delegator] = state

        logger.debug(f"Delegator {delegator} claimed {reward} for epoch {epoch} on node {identity_id}")
        return reward

    def batch_claim_delegator_rewards(
        self,
        identity_ids: List[int],
        epochs: List[int],
        delegators: List[str],
    ) -> Dict[Tuple[int, int, str], int]:
        """
        Claim every (node, epoch, delegator) combination, oldest epoch first.

        All-or-nothing: if any claim fails, no claim is recorded.
        """
        with self._lock:
            vaults = [self._vault(identity_id) for identity_id in identity_ids]
            snapshot = {vault.identity_id: copy.deepcopy(vault.reward_states) for vault in vaults}
            results = {}
            try:
                for identity_id in identity_ids:
                    for epoch in sorted(epochs):
                        for delegator in delegators:
                            results[(identity_id, epoch, delegator)] = self.claim_delegator_rewards(
                                identity_id, epoch, delegator
                            )
            except Exception:
                for vault in vaults:
                    vault.reward_states = snapshot[vault.identity_id]
                raise
            return results

    def get_claimable_rewards(self, identity_id: int, delegator: str) -> int:
        """Sum of unclaimed rewards over all finalized epochs."""
        vault = self._vault(identity_id)
        state = vault.reward_states.get(delegator)
        if state is None:
            return 0
        current = self.chronos.get_current_epoch()
        return sum(
            self._epoch_reward(vault, delegator, state, epoch)
            for epoch in range(state.last_claimed_epoch + 1, current)
        )

    def get_delegator_reward_state(self, identity_id: int, delegator: str) -> Optional[DelegatorRewardState]:
        state = self._vault(identity_id).reward_states.get(delegator)
        return replace(state) if state else None

    # ========================================================================
    # OPERATOR FEE
    # ========================================================================

    def get_operator_fee_balance(self, identity_id: int) -> int:
        return self._vault(identity_id).operator_fee_balance

    def request_operator_fee_withdrawal(self, identity_id: int, caller: str, amount: int) -> WithdrawalRequest:
        if amount <= 0:
            raise ZeroTokenAmount("Operator fee withdrawal must be greater than zero")
        with self._lock:
            vault = self._vault(identity_id)
            self.identities.require_admin(identity_id, caller)
            if amount > vault.operator_fee_balance:
                raise AmountExceedsOperatorFeeBalance(
                    f"Requested {amount}, operator fee balance is {vault.operator_fee_balance}"
                )
            release_at = self.chronos.now() + self.params.operator_fee_withdrawal_delay
            vault.operator_fee_balance -= amount
            if vault.operator_fee_withdrawal is None:
                vault.operator_fee_withdrawal = WithdrawalRequest(amount=amount, release_at=release_at)
            else:
                vault.operator_fee_withdrawal.amount += amount
                vault.operator_fee_withdrawal.release_at = release_at
            return vault.operator_fee_withdrawal

    def cancel_operator_fee_withdrawal(self, identity_id: int, caller: str) -> int:
        with self._lock:
            vault = self._vault(identity_id)
            self.identities.require_admin(identity_id, caller)
            request = vault.operator_fee_withdrawal
            if request is None:
                raise WithdrawalWasntInitiated(f"No operator fee withdrawal pending on node {identity_id}")
            vault.operator_fee_balance += request.amount
            vault.operator_fee_withdrawal = None
            return request.amount

    def finalize_operator_fee_withdrawal(self, identity_id: int, caller: str) -> int:
        with self._lock:
            vault = self._vault(identity_id)
            self.identities.require_admin(identity_id, caller)
            request = vault.operator_fee_withdrawal
            if request is None:
                raise WithdrawalWasntInitiated(f"No operator fee withdrawal pending on node {identity_id}")
            now = self.chronos.now()
            if now < request.release_at:
                raise WithdrawalPeriodPending(request.release_at, now)

            if self.token is not None:
                self.token.send(caller, request.amount)
            vault.operator_fee_paid_out += request.amount
            vault.operator_fee_withdrawal = None

        logger.info(f"Operator fee withdrawal of {request.amount} finalized on node {identity_id}")
        return request.amount

    def restake_operator_fee(self, identity_id: int, caller: str, amount: int) -> int:
        """
        Move operator fee balance into the node stake as the admin's shares.

        Earned and paid-out totals are unaffected.

        Returns:
            Shares minted
        """
        if amount <= 0:
            raise ZeroTokenAmount("Restake amount must be greater than zero")
        with self._lock:
            vault = self._vault(identity_id)
            self.identities.require_admin(identity_id, caller)
            if amount > vault.operator_fee_balance:
                raise AmountExceedsOperatorFeeBalance(
                    f"Requested {amount}, operator fee balance is {vault.operator_fee_balance}"
                )
            new_stake = self._check_stake_increase(identity_id, amount)
            state = self._prepare_share_change(vault, caller)
            minted = self._mint_amount(vault, amount)
            if minted == 0:
                raise ZeroTokenAmount(f"Restake of {amount} is too small to mint shares")

            self._store_state(vault, caller, state)
            vault.operator_fee_balance -= amount
            vault.shares[caller] = vault.shares.get(caller, 0) + minted
            vault.total_shares += minted
            self.market.set_stake(identity_id, new_stake)

        logger.debug(f"Operator of node {identity_id} restaked {amount} ({minted} shares)")
        self._notify(self._on_stake_changed, identity_id, caller, new_stake)
        return minted

    def get_operator_fee_totals(self, identity_id: int) -> Dict[str, int]:
        vault = self._vault(identity_id)
        return {
            "balance": vault.operator_fee_balance,
            "earned": vault.operator_fee_earned,
            "paid_out": vault.operator_fee_paid_out,
            "pending_withdrawal": vault.operator_fee_withdrawal.amount if vault.operator_fee_withdrawal else 0,
        }

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_total_shares(self, identity_id: int) -> int:
        return self._vault(identity_id).total_shares

    def get_shares(self, identity_id: int, delegator: str) -> int:
        return self._vault(identity_id).shares.get(delegator, 0)

    def get_delegator_stake(self, identity_id: int, delegator: str) -> int:
        """Current token value of a delegator's shares."""
        vault = self._vault(identity_id)
        if vault.total_shares == 0:
            return 0
        return vault.shares.get(delegator, 0) * self.market.get_node_stake(identity_id) // vault.total_shares

    def get_share_value(self, identity_id: int) -> int:
        """Token value of one share, scaled by 1e18; 0 with no shares outstanding."""
        vault = self._vault(identity_id)
        if vault.total_shares == 0:
            return 0
        return self.market.get_node_stake(identity_id) * SCALE18 // vault.total_shares

    def get_delegators(self, identity_id: int) -> List[str]:
        vault = self._vault(identity_id)
        return sorted(d for d, shares in vault.shares.items() if shares > 0)

    def identity_ids(self) -> List[int]:
        return sorted(self._vaults)
