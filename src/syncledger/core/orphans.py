"""
Orphan Handler - retires contract sides when objects disappear.

Called when an origin or target object is deleted (delete notification or
full-run orphan detection). Every contract referencing the object has the
matching side cleared; contracts left with neither side are deleted.
Running it twice for the same object is a no-op.
"""

from __future__ import annotations

import logging

from syncledger.core.store import ContractStore
from syncledger.errors import ConcurrentWriteError
from syncledger.models import SynchronizationContract
from syncledger.utils.logger import context, get_logger


class OrphanHandler:
    """
    Clears contract sides that point at removed objects.

    Example:
        handler = OrphanHandler(ContractStore(db))

        # Object "o1" was deleted in the origin system
        affected = handler.handle_object_removal("o1")
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        contracts: ContractStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self.contracts = contracts
        self.logger = logger or get_logger("orphans")

    def handle_object_removal(
        self,
        object_identifier: str,
        synchronization_id: str | None = None,
    ) -> list[SynchronizationContract]:
        """
        Clear every contract side that references ``object_identifier``.

        Args:
            object_identifier: Id of the removed origin or target object
            synchronization_id: Only consider contracts of this synchronization

        Returns:
            The affected contracts, as written (deleted ones have both ids None)
        """
        affected: list[SynchronizationContract] = []
        for contract in self.contracts.find_by_object(object_identifier, synchronization_id):
            result = self._clear(contract, object_identifier)
            if result is not None:
                affected.append(result)

        if affected:
            self.logger.info(
                f"Retired {len(affected)} contract side(s) for object {object_identifier}",
                extra=context(object_id=object_identifier, synchronization_id=synchronization_id),
            )
        return affected

    def release_origin(self, contract: SynchronizationContract) -> SynchronizationContract | None:
        """
        Clear only the origin side of ``contract``.

        Used when a full run no longer sees the origin object. The target
        side is left alone even if another object shares the same id.

        Returns:
            The contract as written, or None when it had already changed
        """
        origin_id = contract.origin_id
        if origin_id is None:
            return None
        return self._clear(contract, origin_id, target_side=False)

    def retire(self, contract: SynchronizationContract) -> SynchronizationContract | None:
        """Clear both sides of a contract (and so delete it)."""
        contract.clear_origin()
        contract.clear_target()
        return self._write(contract)

    def _clear(
        self,
        contract: SynchronizationContract,
        object_identifier: str,
        origin_side: bool = True,
        target_side: bool = True,
    ) -> SynchronizationContract | None:
        for _ in range(self.MAX_ATTEMPTS):
            matched = False
            if origin_side and contract.origin_id == object_identifier:
                contract.clear_origin()
                matched = True
            if target_side and contract.target_id == object_identifier:
                contract.clear_target()
                matched = True
            if not matched:
                return None

            try:
                return self._write(contract)
            except ConcurrentWriteError:
                fresh = self.contracts.get(contract.id) if contract.id is not None else None
                if fresh is None:
                    return None
                contract = fresh

        raise ConcurrentWriteError(
            f"Contract {contract.uuid} kept changing while retiring {object_identifier}"
        )

    def _write(self, contract: SynchronizationContract) -> SynchronizationContract | None:
        """Persist a cleared contract. Returns None when it was already gone."""
        if contract.is_empty:
            if not self.contracts.delete(contract):
                return None
            self.logger.debug(
                f"Deleted contract {contract.uuid}",
                extra=context(contract=contract.uuid),
            )
            return contract
        return self.contracts.update(contract)
