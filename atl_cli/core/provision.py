"""
Idempotent creation and hierarchical bulk provisioning.

``create_or_fetch`` turns an "already exists" conflict into a lookup, and
``Provisioner`` walks a forest of ResourceSpecs, creating each node under its
parent and recording one outcome per node without ever aborting the walk.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from atl_cli.core.client import APIClient, CLIError, ConfigurationError, HttpError
from atl_cli.core.types import (
    CreateCall,
    Created,
    CreationResult,
    Failed,
    ProvisioningReport,
    ResourceSpec,
)

logger = logging.getLogger(__name__)

Builder = Callable[[ResourceSpec, CreationResult | None], CreateCall]
CreatedHook = Callable[[ResourceSpec, CreationResult], None]

NO_IDENTIFIER = "no identifier returned"


def create_or_fetch(
    client: APIClient,
    call: CreateCall,
    natural_key: str | None = None,
    parent_id: str | None = None,
) -> CreationResult:
    """
    Create a resource, or fetch it if it already exists.

    Args:
        client: API client
        call: Create request plus the lookup to use on conflict
        natural_key: Caller-visible key, used when the payload has none
        parent_id: Identifier of the parent resource, if any

    Returns:
        CreationResult for the created or existing resource

    Raises:
        HttpError: Any error other than a conflict, or a conflict with no lookup
        TransportError: On network failure

    """
    try:
        payload = client.execute(call.create)
    except HttpError as e:
        if not e.conflict or call.fetch is None:
            raise
        logger.info("%s already exists, fetching...", natural_key or call.create.path)
        payload = client.execute(call.fetch)
        if call.extract is not None:
            payload = call.extract(payload)
        if payload is None:
            raise HttpError(404, f"{natural_key or call.fetch.path} reported as existing but not found")

    return CreationResult.from_payload(payload, natural_key=natural_key, parent_id=parent_id)


class Provisioner:
    """
    Create a forest of resources depth-first, parents before children.

    Example:
        provisioner = Provisioner(client, build_page, pacing_delay=0.3)
        report = provisioner.provision(ResourceSpec.forest(pages), parent=home)
        for failure in report.failed:
            print(failure.key, failure.message)

    """

    def __init__(
        self,
        client: APIClient,
        builder: Builder,
        pacing_delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        on_created: CreatedHook | None = None,
    ):
        """
        Args:
            client: API client
            builder: Turns a spec and its parent's result into a CreateCall
            pacing_delay: Seconds to wait between successive creation calls
            sleep: Called with pacing_delay
            on_created: Called after each successful node (e.g. to add labels)

        """
        self.client = client
        self.builder = builder
        self.pacing_delay = pacing_delay
        self.sleep = sleep
        self.on_created = on_created

    def provision(
        self,
        forest: list[ResourceSpec],
        parent: CreationResult | None = None,
    ) -> ProvisioningReport:
        """
        Create every reachable node and report one outcome per node.

        Children of a node that failed are skipped. A node with children that
        comes back without an ID counts as failed. Entries are in pre-order.

        Raises:
            ConfigurationError: Credentials missing; nothing can succeed

        """
        report = ProvisioningReport()
        for spec in forest:
            self._provision_node(spec, parent, report)
        return report

    def _provision_node(
        self,
        spec: ResourceSpec,
        parent: CreationResult | None,
        report: ProvisioningReport,
    ) -> None:
        self._pace(report)
        try:
            call = self.builder(spec, parent)
            result = create_or_fetch(
                self.client,
                call,
                natural_key=spec.key,
                parent_id=parent.id if parent else None,
            )
        except ConfigurationError:
            raise
        except CLIError as e:
            logger.warning('Error creating "%s": %s', spec.key, e.message)
            report.add(Failed(spec.key, e.message))
            return

        # Children reference their parent by ID.
        if spec.children and result.id is None:
            logger.warning('"%s" returned no identifier, skipping its children', spec.key)
            report.add(Failed(spec.key, NO_IDENTIFIER))
            return

        logger.info("Created %s (ID: %s)%s", spec.key, result.id, f" under {parent.id}" if parent else "")
        report.add(Created(result))
        self._after_created(spec, result)

        for child in spec.children:
            self._provision_node(child, result, report)

    def _pace(self, report: ProvisioningReport) -> None:
        # Every earlier node has exactly one entry, so a non-empty report means a call came before.
        if len(report) and self.pacing_delay > 0:
            self.sleep(self.pacing_delay)

    def _after_created(self, spec: ResourceSpec, result: CreationResult) -> None:
        if self.on_created is None:
            return
        try:
            self.on_created(spec, result)
        except ConfigurationError:
            raise
        except CLIError as e:
            logger.warning('Post-create step for "%s" failed: %s', spec.key, e.message)


def provision(
    client: APIClient,
    forest: list[ResourceSpec],
    builder: Builder,
    parent: CreationResult | None = None,
    pacing_delay: float = 0.0,
    **kwargs: Any,
) -> ProvisioningReport:
    """Convenience wrapper: build a Provisioner and run it once."""
    return Provisioner(client, builder, pacing_delay=pacing_delay, **kwargs).provision(forest, parent)
