"""
dkgincentives/service.py

Async front end for the incentives engine.

Serializes callers through one trio.Lock, publishes an event for every
successful mutation and runs an epoch ticker that finalizes pools when a
Chronos epoch ends.

Usage:
    from dkgincentives.service import IncentivesService

    service = IncentivesService(engine, peers)
    async with trio.open_nursery() as nursery:
        await service.start(nursery)
        score = await service.submit_commit(agreement_id, 0, node)
        ...
        await service.stop()
"""

import logging
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import trio

from .protocol.messages import create_event, serialize_message

if TYPE_CHECKING:
    from .engine import IncentivesEngine

logger = logging.getLogger("dkgincentives.service")


# Event topics
COMMITS_TOPIC = "dkg/commits"
PROOFS_TOPIC = "dkg/proofs"
POOLS_TOPIC = "dkg/pools"
STAKING_TOPIC = "dkg/staking"
EPOCHS_TOPIC = "dkg/epochs"


class IncentivesService:
    """
    trio wrapper around IncentivesEngine.

    peers is any object with an async broadcast(topic, data) method; when
    omitted, nothing is published. Publishing failures are logged and never
    undo the ledger change that triggered them.
    """

    def __init__(self, engine: "IncentivesEngine", peers: Any = None):
        """
        Initialize IncentivesService.

        Args:
            engine: Engine holding the ledgers
            peers: Optional event publisher
        """
        self.engine = engine
        self.peers = peers
        self._lock = trio.Lock()
        self._started = False
        self._cancel_scope: Optional[trio.CancelScope] = None
        self._last_epoch = 0
        self._on_epoch: List[Callable[[int], None]] = []

        self.events_published = 0
        self.publish_failures = 0

    @property
    def is_started(self) -> bool:
        return self._started

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self, nursery: Optional[trio.Nursery] = None) -> bool:
        """
        Start the service.

        Args:
            nursery: When given, the epoch ticker runs in it

        Returns:
            True once started
        """
        if self._started:
            return True
        self._last_epoch = self.engine.chronos.get_current_epoch()
        if nursery is not None:
            nursery.start_soon(self._epoch_loop)
        self._started = True
        logger.info(f"IncentivesService started at epoch {self._last_epoch}")
        return True

    async def stop(self) -> None:
        """Stop the epoch ticker."""
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
            self._cancel_scope = None
        self._started = False
        logger.info("IncentivesService stopped")

    async def _epoch_loop(self) -> None:
        with trio.CancelScope() as scope:
            self._cancel_scope = scope
            while True:
                await trio.sleep(max(self.engine.chronos.time_until_next_epoch(), 0))
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Epoch tick failed: {e}")
                    raise

    async def tick(self) -> Optional[int]:
        """
        Finalize pools if a new Chronos epoch has begun.

        Returns:
            The new epoch, or None if the epoch hasn't changed
        """
        async with self._lock:
            current = self.engine.chronos.get_current_epoch()
            if current <= self._last_epoch:
                return None
            finalized = self.engine.finalize_elapsed_epochs()
            self._last_epoch = current

        logger.info(f"Epoch {current} started; pools finalized through {finalized}")
        for callback in self._on_epoch:
            try:
                callback(current)
            except Exception as e:
                logger.error(f"Epoch callback error: {e}")
        await self._publish(EPOCHS_TOPIC, "epoch_started", {"epoch": current, "finalized_through": finalized})
        return current

    # ========================================================================
    # CALLBACKS / PUBLISHING
    # ========================================================================

    def on_commit(self, callback: Callable) -> None:
        """Register callback(CommitReceipt) for accepted commits."""
        self.engine.commits.on_commit(callback)

    def on_proof(self, callback: Callable) -> None:
        """Register callback(ProofReceipt) for accepted proofs."""
        self.engine.proofs.on_proof(callback)

    def on_epoch(self, callback: Callable[[int], None]) -> None:
        """Register callback(epoch) fired when a new epoch begins."""
        self._on_epoch.append(callback)

    async def _publish(self, topic: str, event_type: str, payload: Any) -> None:
        if self.peers is None:
            return
        event = create_event(event_type, payload, epoch=self.engine.chronos.get_current_epoch())
        try:
            await self.peers.broadcast(topic, serialize_message(event))
            self.events_published += 1
        except Exception as e:
            self.publish_failures += 1
            logger.error(f"Failed to publish {event_type} to {topic}: {e}")

    async def _call(self, func: Callable, *args, **kwargs):
        async with self._lock:
            return func(*args, **kwargs)

    # ========================================================================
    # AGREEMENTS / COMMITS / PROOFS
    # ========================================================================

    async def create_agreement(self, *args, **kwargs):
        agreement = await self._call(self.engine.create_agreement, *args, **kwargs)
        await self._publish(POOLS_TOPIC, "agreement_created", agreement.to_dict())
        return agreement

    async def submit_commit(self, agreement_id: str, epoch: int, identity_id: int, **kwargs) -> int:
        def commit():
            # Rank is read under the same lock hold as the write
            score = self.engine.submit_commit(agreement_id, epoch, identity_id, **kwargs)
            return score, self.engine.commits.get_rank(agreement_id, epoch, identity_id)

        score, rank = await self._call(commit)
        await self._publish(COMMITS_TOPIC, "commit_submitted", {
            "agreement_id": agreement_id,
            "epoch": epoch,
            "identity_id": identity_id,
            "score": score,
            "rank": rank,
        })
        return score

    async def get_challenge(self, agreement_id: str, epoch: int):
        return await self._call(self.engine.get_challenge, agreement_id, epoch)

    async def send_proof(self, agreement_id: str, epoch: int, identity_id: int, merkle_proof, chunk_hash: str):
        receipt = await self._call(
            self.engine.send_proof, agreement_id, epoch, identity_id, merkle_proof, chunk_hash
        )
        await self._publish(PROOFS_TOPIC, "proof_accepted", receipt)
        return receipt

    # ========================================================================
    # STAKING
    # ========================================================================

    async def _staking(self, event_type: str, func: Callable, identity_id: int, *args, **extra) -> Any:
        result = await self._call(func, identity_id, *args)
        payload: Dict[str, Any] = {"identity_id": identity_id, "result": result}
        payload.update(extra)
        await self._publish(STAKING_TOPIC, event_type, payload)
        return result

    async def create_profile(self, node_id: bytes, admin: str, ask: int, operator_fee: int = 0, name: str = "") -> int:
        identity_id = await self._call(
            self.engine.create_profile, node_id, admin, ask, operator_fee=operator_fee, name=name
        )
        await self._publish(STAKING_TOPIC, "profile_created", self.engine.identities.get(identity_id))
        return identity_id

    async def set_ask(self, identity_id: int, caller: str, ask: int) -> None:
        await self._staking("ask_updated", self.engine.set_ask, identity_id, caller, ask, ask=ask)

    async def set_operator_fee(self, identity_id: int, caller: str, fee: int) -> int:
        return await self._staking("operator_fee_updated", self.engine.set_operator_fee, identity_id, caller, fee)

    async def deposit(self, identity_id: int, delegator: str, amount: int) -> int:
        return await self._staking(
            "stake_deposited", self.engine.deposit, identity_id, delegator, amount,
            delegator=delegator, amount=amount,
        )

    async def request_withdrawal(self, identity_id: int, delegator: str, shares: int):
        return await self._staking(
            "withdrawal_requested", self.engine.request_withdrawal, identity_id, delegator, shares,
            delegator=delegator,
        )

    async def cancel_withdrawal(self, identity_id: int, delegator: str) -> int:
        return await self._staking(
            "withdrawal_cancelled", self.engine.cancel_withdrawal, identity_id, delegator,
            delegator=delegator,
        )

    async def finalize_withdrawal(self, identity_id: int, delegator: str) -> int:
        return await self._staking(
            "withdrawal_finalized", self.engine.finalize_withdrawal, identity_id, delegator,
            delegator=delegator,
        )

    async def claim_delegator_rewards(self, identity_id: int, epoch: int, delegator: str) -> int:
        return await self._staking(
            "rewards_claimed", self.engine.claim_delegator_rewards, identity_id, epoch, delegator,
            delegator=delegator, epoch=epoch,
        )

    async def batch_claim_delegator_rewards(self, identity_ids: List[int], epochs: List[int], delegators: List[str]):
        results = await self._call(self.engine.batch_claim_delegator_rewards, identity_ids, epochs, delegators)
        await self._publish(STAKING_TOPIC, "rewards_batch_claimed", {
            "claims": [
                {"identity_id": i, "epoch": e, "delegator": d, "reward": reward}
                for (i, e, d), reward in results.items()
            ],
        })
        return results

    async def request_operator_fee_withdrawal(self, identity_id: int, caller: str, amount: int):
        return await self._staking(
            "operator_fee_withdrawal_requested", self.engine.request_operator_fee_withdrawal,
            identity_id, caller, amount,
        )

    async def cancel_operator_fee_withdrawal(self, identity_id: int, caller: str) -> int:
        return await self._staking(
            "operator_fee_withdrawal_cancelled", self.engine.cancel_operator_fee_withdrawal, identity_id, caller,
        )

    async def finalize_operator_fee_withdrawal(self, identity_id: int, caller: str) -> int:
        return await self._staking(
            "operator_fee_withdrawal_finalized", self.engine.finalize_operator_fee_withdrawal, identity_id, caller,
        )

    async def restake_operator_fee(self, identity_id: int, caller: str, amount: int) -> int:
        return await self._staking(
            "operator_fee_restaked", self.engine.restake_operator_fee, identity_id, caller, amount,
            amount=amount,
        )
