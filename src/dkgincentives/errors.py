"""
dkgincentives/errors.py

Exception hierarchy for dkgincentives.

Four families:
- EligibilityError: the caller is not allowed to act right now (window
  closed, wrong score mode, not ranked, already done). Resubmit later.
- ProofVerificationError: the submitted Merkle proof does not check out.
- StakingError: bad staking, ask or claim request.
- InvariantViolation: internal ledger corruption. Never caught by the
  package; indicates a caller-discipline bug.

All rejections are raised before any state is written.
"""

from typing import Optional


class IncentivesError(Exception):
    """Base class for all dkgincentives errors."""
    pass


# ============================================================================
# ELIGIBILITY
# ============================================================================

class EligibilityError(IncentivesError):
    """Operation rejected because the caller is not eligible at this time."""
    pass


class InvalidScoreFunctionId(EligibilityError):
    """Agreement uses a different (or unknown) score function."""

    def __init__(self, agreement_id: str, expected: Optional[int], actual: int):
        self.agreement_id = agreement_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invalid score function id for {agreement_id}: expected {expected}, got {actual}"
        )


class CommitWindowClosed(EligibilityError):
    """Commit submitted outside of the epoch's commit window."""

    def __init__(self, agreement_id: str, epoch: int, window_open: int, window_close: int, now: int):
        self.agreement_id = agreement_id
        self.epoch = epoch
        self.window_open = window_open
        self.window_close = window_close
        self.now = now
        super().__init__(
            f"Commit window closed for {agreement_id} epoch {epoch}: "
            f"[{window_open}, {window_close}], now={now}"
        )


class NodeAlreadySubmittedCommit(EligibilityError):
    """Node already submitted a commit for this agreement epoch."""

    def __init__(self, agreement_id: str, epoch: int, identity_id: int):
        self.agreement_id = agreement_id
        self.epoch = epoch
        self.identity_id = identity_id
        super().__init__(
            f"Node {identity_id} already committed to {agreement_id} in epoch {epoch}"
        )


class NodeNotInNeighborhood(EligibilityError):
    """Node is not within the content key's neighborhood."""

    def __init__(self, identity_id: int, reason: str = ""):
        self.identity_id = identity_id
        super().__init__(f"Node {identity_id} is not in the neighborhood{': ' + reason if reason else ''}")


class InvalidNeighborhoodProof(EligibilityError):
    """Neighborhood proof indices do not describe the true neighborhood."""
    pass


class NodeNotRegistered(EligibilityError):
    """Node identity is unknown or not in the sharding table."""
    pass


class AgreementExpired(EligibilityError):
    """Epoch is beyond the agreement's lifetime."""
    pass


class ProofWindowClosed(EligibilityError):
    """Proof submitted outside of the epoch's proof window."""

    def __init__(self, agreement_id: str, epoch: int, window_open: int, window_close: int, now: int):
        self.agreement_id = agreement_id
        self.epoch = epoch
        self.window_open = window_open
        self.window_close = window_close
        self.now = now
        super().__init__(
            f"Proof window closed for {agreement_id} epoch {epoch}: "
            f"[{window_open}, {window_close}), now={now}"
        )


class ChallengeNotAvailable(EligibilityError):
    """Challenge requested while the commit window is still open."""
    pass


class NodeNotAwarded(EligibilityError):
    """Node is not among the top-ranked commits for this epoch."""

    def __init__(self, agreement_id: str, epoch: int, identity_id: int, rank: Optional[int]):
        self.agreement_id = agreement_id
        self.epoch = epoch
        self.identity_id = identity_id
        self.rank = rank
        super().__init__(
            f"Node {identity_id} not awarded for {agreement_id} epoch {epoch} (rank={rank})"
        )


class NodeAlreadyRewarded(EligibilityError):
    """Node already received its reward for this agreement epoch."""

    def __init__(self, agreement_id: str, epoch: int, identity_id: int):
        self.agreement_id = agreement_id
        self.epoch = epoch
        self.identity_id = identity_id
        super().__init__(
            f"Node {identity_id} already rewarded for {agreement_id} epoch {epoch}"
        )


# ============================================================================
# PROOFS
# ============================================================================

class ProofVerificationError(IncentivesError):
    """Submitted proof failed cryptographic verification."""
    pass


class InvalidProof(ProofVerificationError):
    """Merkle proof does not reconstruct the content root at the challenged chunk."""

    def __init__(self, agreement_id: str, epoch: int, identity_id: int, chunk_index: int):
        self.agreement_id = agreement_id
        self.epoch = epoch
        self.identity_id = identity_id
        self.chunk_index = chunk_index
        super().__init__(
            f"Invalid proof from node {identity_id} for {agreement_id} "
            f"epoch {epoch} chunk {chunk_index}"
        )


# ============================================================================
# STAKING / ASK / CLAIMS
# ============================================================================

class StakingError(IncentivesError):
    """Rejected staking, ask, fee or reward-claim request."""
    pass


class ZeroAsk(StakingError):
    """Ask must be greater than zero."""
    pass


class ZeroTokenAmount(StakingError):
    """Token amount must be greater than zero."""
    pass


class ProfileDoesntExist(StakingError):
    """No profile for the given identity id."""

    def __init__(self, identity_id: int):
        self.identity_id = identity_id
        super().__init__(f"Profile doesn't exist: {identity_id}")


class ProfileAlreadyExists(StakingError):
    """A profile already exists for this node id."""
    pass


class OnlyProfileAdminFunction(StakingError):
    """Caller is not the profile admin."""

    def __init__(self, identity_id: int, caller: str):
        self.identity_id = identity_id
        self.caller = caller
        super().__init__(f"Only the admin of profile {identity_id} may call this, not {caller}")


class MaximumStakeExceeded(StakingError):
    """Operation would push node stake above the maximum."""

    def __init__(self, identity_id: int, resulting_stake: int, maximum_stake: int):
        self.identity_id = identity_id
        self.resulting_stake = resulting_stake
        self.maximum_stake = maximum_stake
        super().__init__(
            f"Maximum stake exceeded for node {identity_id}: {resulting_stake} > {maximum_stake}"
        )


class WithdrawalExceedsStake(StakingError):
    """Delegator asked to withdraw more shares than held."""
    pass


class WithdrawalWasntInitiated(StakingError):
    """No pending withdrawal request."""
    pass


class WithdrawalPeriodPending(StakingError):
    """Withdrawal delay has not elapsed yet."""

    def __init__(self, release_at: int, now: int):
        self.release_at = release_at
        self.now = now
        super().__init__(f"Withdrawal period pending until {release_at} (now {now})")


class AmountExceedsOperatorFeeBalance(StakingError):
    """Requested operator fee amount exceeds the accumulated balance."""
    pass


class InvalidOperatorFee(StakingError):
    """Operator fee outside of the allowed range."""
    pass


class ShardingTableIsFull(StakingError):
    """Sharding table has reached its size limit."""
    pass


class EpochNotFinalized(StakingError):
    """Rewards may only be claimed for epochs that have ended."""
    pass


class MustClaimOlderEpochsFirst(StakingError):
    """Delegator skipped an unclaimed older epoch."""

    def __init__(self, next_claimable_epoch: int, requested_epoch: int):
        self.next_claimable_epoch = next_claimable_epoch
        self.requested_epoch = requested_epoch
        super().__init__(
            f"Must claim older epochs first: next is {next_claimable_epoch}, got {requested_epoch}"
        )


class AlreadyClaimed(StakingError):
    """Epoch rewards were already claimed."""
    pass


class PreviousEpochsNotClaimed(StakingError):
    """Stake change attempted while older epoch rewards are unclaimed."""

    def __init__(self, last_claimed_epoch: int, required_epoch: int):
        self.last_claimed_epoch = last_claimed_epoch
        self.required_epoch = required_epoch
        super().__init__(
            f"Claim rewards up to epoch {required_epoch} before changing stake "
            f"(last claimed {last_claimed_epoch})"
        )


# ============================================================================
# AGREEMENTS
# ============================================================================

class AgreementDoesntExist(IncentivesError, LookupError):
    """Unknown agreement id."""

    def __init__(self, agreement_id: str):
        self.agreement_id = agreement_id
        super().__init__(f"Service agreement doesn't exist: {agreement_id}")


class AgreementAlreadyExists(IncentivesError):
    """Agreement id already registered."""
    pass


# ============================================================================
# FATAL
# ============================================================================

class InvariantViolation(IncentivesError):
    """
    Ledger invariant broken.

    Raised for distributed > pool, negative aggregates and mismatched
    snapshot updates. These indicate a defect in the caller, not bad input,
    and must never be swallowed.
    """
    pass
