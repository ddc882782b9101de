"""
Sync Reconciler - Keeps a secondary's size in step with a primary's replicas.

Each call re-reads both objects and derives the patch from fresh state, so the
reconciler carries no memory between requests and is safe to invoke any
number of times, in any order, concurrently for different requests.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from resources import (
    DEPLOYMENTS,
    MEMCACHEDS,
    SYNC_LABEL_KEY,
    NamespacedName,
    PrimaryInstance,
    ReconcileRequest,
    ResourceKind,
    SecondaryInstance,
    create_merge_patch,
    lookup_label,
)
from store import NotFoundError, ResourceStore

logger = logging.getLogger(__name__)


class SyncOutcome(Enum):
    """How a successful reconciliation ended."""

    PRIMARY_NOT_FOUND = "primary_not_found"
    UNLABELED = "unlabeled"
    SECONDARY_NOT_FOUND = "secondary_not_found"
    IN_SYNC = "in_sync"
    SYNCED = "synced"


@dataclass
class ReconcileResult:
    """Result from a reconcile() call."""

    outcome: SyncOutcome
    requeue: bool = False
    requeue_after: Optional[float] = None
    message: str = ""


class SyncReconciler:
    """
    Propagates ``spec.replicas`` of a labeled primary to ``spec.size`` of the
    secondary named by the label, within the request's namespace.

    Store errors (including a ConflictError from the conditional patch) are
    not caught here; the caller is expected to requeue with backoff.
    """

    def __init__(
        self,
        store: ResourceStore,
        label_key: str = SYNC_LABEL_KEY,
        primary_kind: ResourceKind = DEPLOYMENTS,
        secondary_kind: ResourceKind = MEMCACHEDS,
    ):
        self.store = store
        self.label_key = label_key
        self.primary_kind = primary_kind
        self.secondary_kind = secondary_kind

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """
        Reconcile a single primary instance.

        Args:
            request: Namespace and name of the primary

        Returns:
            ReconcileResult describing which terminal case was reached

        Raises:
            StoreError: If a read or the conditional patch fails
        """
        try:
            raw_primary = await self.store.get(
                self.primary_kind, request.namespace, request.name
            )
        except NotFoundError:
            # Deleted after the event was emitted
            logger.info(
                f"{self.primary_kind.kind} {request} not found. "
                f"Ignoring since object must be deleted"
            )
            return ReconcileResult(
                outcome=SyncOutcome.PRIMARY_NOT_FOUND,
                message=f"{self.primary_kind.kind} not found",
            )

        primary = PrimaryInstance.model_validate(raw_primary)

        secondary_name = lookup_label(primary.metadata.labels, self.label_key)
        if secondary_name is None:
            logger.debug(f"No associated {self.secondary_kind.kind} for {request}")
            return ReconcileResult(outcome=SyncOutcome.UNLABELED)

        secondary_key = NamespacedName(request.namespace, secondary_name)

        try:
            raw_secondary = await self.store.get(
                self.secondary_kind, secondary_key.namespace, secondary_key.name
            )
        except NotFoundError:
            logger.info(
                f"{self.secondary_kind.kind} {secondary_key} referenced by "
                f"{request} not found. Nothing to do."
            )
            return ReconcileResult(
                outcome=SyncOutcome.SECONDARY_NOT_FOUND,
                message=f"{self.secondary_kind.kind} {secondary_key} not found",
            )

        secondary = SecondaryInstance.model_validate(raw_secondary)

        if primary.replicas == secondary.size:
            logger.debug(
                f"Replica count on {request} does not differ from {secondary_key}"
            )
            return ReconcileResult(outcome=SyncOutcome.IN_SYNC)

        snapshot = copy.deepcopy(raw_secondary)
        desired = copy.deepcopy(raw_secondary)
        if not isinstance(desired.get("spec"), dict):
            desired["spec"] = {}
        desired["spec"]["size"] = primary.replicas
        patch = create_merge_patch(snapshot, desired)

        logger.info(
            f"Replica count on {request} has changed. Syncing "
            f"{self.secondary_kind.kind} {secondary_key} "
            f"from {secondary.size} to {primary.replicas}"
        )

        await self.store.patch(
            self.secondary_kind,
            secondary_key.namespace,
            secondary_key.name,
            patch,
            resource_version=secondary.metadata.resource_version,
        )

        return ReconcileResult(
            outcome=SyncOutcome.SYNCED,
            message=f"size {secondary.size} -> {primary.replicas}",
        )
