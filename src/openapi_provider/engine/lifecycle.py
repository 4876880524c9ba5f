from contextlib import contextmanager
from enum import Enum
from typing import List, Optional

import structlog

from ..errors import (
    ImmutablePropertyError,
    InvalidStateTransition,
    ReplacementRequired,
    ResourceNotFound,
)
from ..state import APP_STATE
from .client import HTTPResourceClient
from .models import ResourceInstance, ResourceSchema
from .schema.codec import diff, validate_instance

logger = structlog.get_logger(__name__)


class LifecycleState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    PRESENT = "present"
    UPDATING = "updating"
    REFRESHING = "refreshing"
    DELETING = "deleting"


class PlanAction(str, Enum):
    CREATE = "create"
    NOOP = "noop"
    UPDATE = "update"
    REPLACE = "replace"


class ResourceLifecycle:
    """
    The state machine of one managed instance:

        absent -> creating -> present -> updating -> present -> deleting -> absent
        present -> refreshing -> present | absent

    The host runtime serializes calls per instance, so no locking happens
    here. A failed transition restores the previous stable state and
    re-raises; the identifier is set once, at create or import time.
    """

    def __init__(
        self,
        schema: ResourceSchema,
        client: HTTPResourceClient,
        identifier: Optional[str] = None,
        observed: Optional[ResourceInstance] = None,
    ):
        self.schema = schema
        self.client = client
        self.identifier: Optional[str] = str(identifier) if identifier is not None else None
        self.observed: Optional[ResourceInstance] = dict(observed) if observed else None
        self.state = LifecycleState.PRESENT if self.identifier else LifecycleState.ABSENT
        self.log = logger.bind(resource=schema.resource)

    @contextmanager
    def _transition(self, operation: str, allowed: LifecycleState, transient: LifecycleState):
        if self.state != allowed:
            raise InvalidStateTransition(operation, self.state)
        self.state = transient
        try:
            yield
        except Exception as e:
            self.state = allowed
            self.log.warning(
                "lifecycle.operation_failed",
                operation=operation,
                identifier=self.identifier,
                error=str(e),
                exc_info=APP_STATE.verbose_mode,
            )
            raise

    def create(self, desired: ResourceInstance) -> ResourceInstance:
        with self._transition("create", LifecycleState.ABSENT, LifecycleState.CREATING):
            observed = self.client.create(self.schema, desired)
            self.identifier = observed[self.schema.identifier.name]
            self.observed = observed
            self.state = LifecycleState.PRESENT
        self.log.info("lifecycle.created", identifier=self.identifier)
        return observed

    def refresh(self) -> Optional[ResourceInstance]:
        """
        Re-reads the remote object. Returns None, and moves to absent, when the
        object was deleted out-of-band.
        """
        with self._transition("refresh", LifecycleState.PRESENT, LifecycleState.REFRESHING):
            try:
                observed = self.client.read(self.schema, self.identifier)
            except ResourceNotFound:
                self.log.info("lifecycle.gone", identifier=self.identifier)
                self.observed = None
                self.state = LifecycleState.ABSENT
                return None
            self.observed = observed
            self.state = LifecycleState.PRESENT
        return observed

    read = refresh

    def import_(self, identifier: str) -> ResourceInstance:
        """
        Adopts an existing remote object by identifier.

        Raises:
            ResourceNotFound: nothing exists under that identifier.
        """
        if self.state != LifecycleState.ABSENT:
            raise InvalidStateTransition("import", self.state)
        observed = self.client.read(self.schema, str(identifier))
        self.identifier = str(identifier)
        self.observed = observed
        self.state = LifecycleState.PRESENT
        self.log.info("lifecycle.imported", identifier=self.identifier)
        return observed

    def drift(self, desired: ResourceInstance) -> List[str]:
        """Properties whose desired value differs from the last observed state."""
        if self.observed is None:
            return []
        return diff(self.schema, desired, self.observed)

    def plan(self, desired: ResourceInstance) -> PlanAction:
        """Reconciles desired state against the remote object."""
        validate_instance(self.schema, desired)
        if self.state == LifecycleState.PRESENT and self.observed is None:
            self.refresh()
        if self.state == LifecycleState.ABSENT:
            return PlanAction.CREATE
        changed = self.drift(desired)
        if not changed:
            return PlanAction.NOOP
        force_new = set(self.schema.force_new_properties())
        if any(name in force_new for name in changed):
            return PlanAction.REPLACE
        return PlanAction.UPDATE

    def update(self, desired: ResourceInstance) -> ResourceInstance:
        """
        Applies an in-place update.

        Raises:
            ReplacementRequired: a force-new property changed; no request is sent.
            ImmutablePropertyError: an immutable property changed; no request is sent.
        """
        if self.state != LifecycleState.PRESENT:
            raise InvalidStateTransition("update", self.state)
        if self.observed is None and self.refresh() is None:
            raise ResourceNotFound(self.schema.resource, self.identifier)
        changed = self.drift(desired)
        force_new = [n for n in changed if n in self.schema.force_new_properties()]
        if force_new:
            raise ReplacementRequired(self.schema.resource, force_new)
        immutable = [n for n in changed if n in self.schema.immutable_properties()]
        if immutable:
            raise ImmutablePropertyError(self.schema.resource, immutable)
        if not changed:
            self.log.debug("lifecycle.update_skipped", identifier=self.identifier)
            return self.observed

        with self._transition("update", LifecycleState.PRESENT, LifecycleState.UPDATING):
            observed = self.client.update(self.schema, self.identifier, desired)
            self.observed = observed
            self.state = LifecycleState.PRESENT
        self.log.info("lifecycle.updated", identifier=self.identifier, changed=changed)
        return observed

    def delete(self) -> None:
        """Deletes the remote object. Deleting an absent resource is a no-op."""
        if self.state == LifecycleState.ABSENT:
            self.log.debug("lifecycle.delete_skipped", identifier=self.identifier)
            return
        with self._transition("delete", LifecycleState.PRESENT, LifecycleState.DELETING):
            self.client.delete(self.schema, self.identifier)
            self.observed = None
            self.state = LifecycleState.ABSENT
        self.log.info("lifecycle.deleted", identifier=self.identifier)
