"""
dkgincentives/engine.py

Wires the incentive components together.

Every component shares one re-entrant lock owned by the engine, so a
caller can never observe a market aggregate, pool or vault halfway through
an update. Membership of the sharding table follows the market's
minimum-stake crossings.
"""

import logging
import threading
import time
from typing import Any, Callable, List, Optional

from .chronos import Chronos
from .config import ProtocolParameters
from .errors import (
    AgreementAlreadyExists,
    InvalidScoreFunctionId,
    InvariantViolation,
    ZeroTokenAmount,
)
from .identity.registry import IdentityRegistry
from .protocol.agreements import (
    AgreementStore,
    ServiceAgreement,
    compute_key_hash,
    compute_keyword,
    generate_agreement_id,
)
from .protocol.commits import NeighborhoodCommitManager
from .protocol.delegation import DelegationVault
from .protocol.epochs import EpochPoolAccountant
from .protocol.market import MarketState
from .protocol.proofs import ProofRewardManager
from .protocol.scoring import ScoreFunction
from .protocol.sharding import ShardingTable

logger = logging.getLogger("dkgincentives.engine")


class IncentivesEngine:
    """
    Single entry point to the commit, proof, pool and staking ledgers.

    Usage:
        engine = IncentivesEngine(params, start_time=1_700_000_000)
        node = engine.create_profile(b"node-id", admin="0xAdmin", ask=10)
        engine.deposit(node, "0xAdmin", 100_000 * TOKEN)
        agreement = engine.create_agreement("0x" + "11" * 20, 1, b"assertion", ...)
        engine.submit_commit(agreement.agreement_id, 0, node)
    """

    def __init__(
        self,
        params: Optional[ProtocolParameters] = None,
        start_time: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
        beacon: Optional[Callable[[], bytes]] = None,
        token: Any = None,
    ):
        """
        Initialize IncentivesEngine.

        Args:
            params: Protocol parameters (defaults if omitted)
            start_time: Start of Chronos epoch 1 (defaults to now)
            clock: Time source, unix seconds (defaults to time.time)
            beacon: Randomness source for proof challenges
            token: Optional value-transfer collaborator with
                receive(sender, amount) and send(recipient, amount)
        """
        self.params = params or ProtocolParameters()
        self.params.validate()
        self.clock = clock or time.time
        self.token = token
        self._lock = threading.RLock()

        self.chronos = Chronos(
            start_time if start_time is not None else int(self.clock()),
            self.params.epoch_length,
            clock=self.clock,
        )
        self.identities = IdentityRegistry(lock=self._lock)
        self.market = MarketState(self.params, lock=self._lock)
        self.sharding = ShardingTable(
            self.identities,
            size_limit=self.params.sharding_table_size_limit,
            lock=self._lock,
        )
        self.market.on_threshold_crossed(self.sharding.on_threshold_crossed)

        self.pools = EpochPoolAccountant(self.chronos, lock=self._lock)
        self.vault = DelegationVault(
            self.params,
            self.identities,
            self.market,
            self.chronos,
            sharding=self.sharding,
            token=token,
            lock=self._lock,
        )
        self.agreements = AgreementStore(lock=self._lock)
        self.commits = NeighborhoodCommitManager(
            self.params,
            self.agreements,
            self.market,
            self.sharding,
            self.identities,
            clock=self.clock,
            lock=self._lock,
        )
        self.proofs = ProofRewardManager(
            self.params,
            self.agreements,
            self.commits,
            self.pools,
            self.vault,
            clock=self.clock,
            beacon=beacon,
            lock=self._lock,
        )

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # ========================================================================
    # AGREEMENTS
    # ========================================================================

    def create_agreement(
        self,
        asset_storage: str,
        token_id: int,
        assertion_id: bytes,
        epochs_number: int,
        token_amount: int,
        merkle_root: str,
        chunks_number: int,
        score_function_id: int = ScoreFunction.LINEAR_SUM,
        start_time: Optional[int] = None,
        epoch_length: Optional[int] = None,
        proof_window_offset_perc: Optional[int] = None,
        shard_id: Optional[int] = None,
        payer: Optional[str] = None,
    ) -> ServiceAgreement:
        """
        Register a service agreement and fund its epochs.

        Agreement epoch k is funded from Chronos epoch start_pool_epoch + k,
        where start_pool_epoch is the Chronos epoch containing start_time.

        Raises:
            ZeroTokenAmount, InvalidScoreFunctionId, AgreementAlreadyExists,
            ValueError
        """
        if epochs_number <= 0:
            raise ValueError(f"Agreement needs at least one epoch, got {epochs_number}")
        if token_amount <= 0:
            raise ZeroTokenAmount("Agreement token amount must be greater than zero")
        if chunks_number <= 0:
            raise ValueError(f"Content needs at least one chunk, got {chunks_number}")

        offset = self.params.proof_window_offset_perc if proof_window_offset_perc is None else proof_window_offset_perc
        if offset < 0 or offset + self.params.proof_window_duration_perc > 100:
            raise ValueError(
                f"Proof window must end within the epoch: offset={offset} "
                f"duration={self.params.proof_window_duration_perc}"
            )
        epoch_length = epoch_length or self.params.epoch_length
        if epoch_length <= 0:
            raise ValueError(f"Epoch length must be positive, got {epoch_length}")

        keyword = compute_keyword(asset_storage, assertion_id)
        agreement_id = generate_agreement_id(asset_storage, token_id, keyword)
        if ScoreFunction.parse(score_function_id) is None:
            raise InvalidScoreFunctionId(agreement_id, None, score_function_id)

        with self._lock:
            if self.agreements.exists(agreement_id):
                raise AgreementAlreadyExists(f"Service agreement already exists: {agreement_id}")

            start_time = self.chronos.now() if start_time is None else start_time
            shard_id = self.params.default_shard_id if shard_id is None else shard_id
            start_pool_epoch = self.chronos.epoch_at_timestamp(start_time)

            agreement = ServiceAgreement(
                agreement_id=agreement_id,
                asset_storage=asset_storage,
                token_id=token_id,
                keyword=keyword,
                key_hash=compute_key_hash(keyword),
                start_time=start_time,
                epochs_number=epochs_number,
                epoch_length=epoch_length,
                token_amount=token_amount,
                score_function_id=int(score_function_id),
                proof_window_offset_perc=offset,
                merkle_root=merkle_root,
                chunks_number=chunks_number,
                shard_id=shard_id,
                start_pool_epoch=start_pool_epoch,
            )

            if self.token is not None and payer is not None:
                self.token.receive(payer, token_amount)

            self.pools.add_tokens_to_epoch_range(
                shard_id,
                start_pool_epoch,
                start_pool_epoch + epochs_number - 1,
                token_amount,
            )
            self.agreements.add(agreement)

        logger.info(
            f"Agreement {agreement_id} created: {token_amount} over {epochs_number} epochs "
            f"(shard {shard_id}, pool epochs from {start_pool_epoch})"
        )
        return agreement

    def get_agreement(self, agreement_id: str) -> ServiceAgreement:
        return self.agreements.get(agreement_id)

    # ========================================================================
    # COMMITS / PROOFS
    # ========================================================================

    def submit_commit(self, agreement_id: str, epoch: int, identity_id: int, **kwargs) -> int:
        with self._lock:
            return self.commits.submit_commit(agreement_id, epoch, identity_id, **kwargs)

    def get_challenge(self, agreement_id: str, epoch: int):
        with self._lock:
            return self.proofs.get_challenge(agreement_id, epoch)

    def send_proof(self, agreement_id: str, epoch: int, identity_id: int, merkle_proof, chunk_hash: str):
        with self._lock:
            return self.proofs.send_proof(agreement_id, epoch, identity_id, merkle_proof, chunk_hash)

    # ========================================================================
    # STAKING
    # ========================================================================

    def create_profile(self, node_id: bytes, admin: str, ask: int, operator_fee: int = 0, name: str = "") -> int:
        return self.vault.create_profile(node_id, admin, ask, operator_fee=operator_fee, name=name)

    def set_ask(self, identity_id: int, caller: str, ask: int) -> None:
        self.vault.set_ask(identity_id, caller, ask)

    def set_operator_fee(self, identity_id: int, caller: str, fee: int) -> int:
        return self.vault.set_operator_fee(identity_id, caller, fee)

    def deposit(self, identity_id: int, delegator: str, amount: int) -> int:
        return self.vault.deposit(identity_id, delegator, amount)

    def request_withdrawal(self, identity_id: int, delegator: str, shares: int):
        return self.vault.request_withdrawal(identity_id, delegator, shares)

    def cancel_withdrawal(self, identity_id: int, delegator: str) -> int:
        return self.vault.cancel_withdrawal(identity_id, delegator)

    def finalize_withdrawal(self, identity_id: int, delegator: str) -> int:
        return self.vault.finalize_withdrawal(identity_id, delegator)

    def claim_delegator_rewards(self, identity_id: int, epoch: int, delegator: str) -> int:
        return self.vault.claim_delegator_rewards(identity_id, epoch, delegator)

    def batch_claim_delegator_rewards(self, identity_ids: List[int], epochs: List[int], delegators: List[str]):
        return self.vault.batch_claim_delegator_rewards(identity_ids, epochs, delegators)

    def request_operator_fee_withdrawal(self, identity_id: int, caller: str, amount: int):
        return self.vault.request_operator_fee_withdrawal(identity_id, caller, amount)

    def cancel_operator_fee_withdrawal(self, identity_id: int, caller: str) -> int:
        return self.vault.cancel_operator_fee_withdrawal(identity_id, caller)

    def finalize_operator_fee_withdrawal(self, identity_id: int, caller: str) -> int:
        return self.vault.finalize_operator_fee_withdrawal(identity_id, caller)

    def restake_operator_fee(self, identity_id: int, caller: str, amount: int) -> int:
        return self.vault.restake_operator_fee(identity_id, caller, amount)

    # ========================================================================
    # EPOCHS / AUDIT
    # ========================================================================

    def finalize_elapsed_epochs(self) -> int:
        """
        Fold pools of every finished Chronos epoch.

        Returns:
            The last finalized epoch
        """
        with self._lock:
            last = self.chronos.get_current_epoch() - 1
            self.pools.finalize_all(last)
        logger.debug(f"Epoch pools finalized through {last}")
        return last

    def audit(self) -> None:
        """
        Recompute every aggregate from scratch and compare.

        Raises:
            InvariantViolation: on the first mismatch found
        """
        with self._lock:
            self.market.verify_aggregate()
            for shard_id in self.pools.shard_ids():
                if not self.pools.verify_conservation(shard_id):
                    message = f"Shard {shard_id} pools no longer sum to the funded amount"
                    logger.critical(message)
                    raise InvariantViolation(message)
