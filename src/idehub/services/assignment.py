"""Storage assignment for warm instances.

Warm instances start without a bucket. Once a user claims one, the bucket
and credentials are pushed to the instance's web server over the overlay
network (``http://<service>:<port>``), bypassing the reverse proxy.
"""

import logging

import httpx

from idehub.config import AssignmentConfig, InstanceConfig
from idehub.core.models import (
    AlreadyAssigned,
    Assigned,
    AssignmentFailed,
    AssignmentResult,
    StorageConfig,
)
from idehub.core.retry import RetryPolicy, retry_always, run_with_policy
from idehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class StorageAssigner:
    """Probes an instance's web server and hands it a bucket."""

    def __init__(
        self,
        config: AssignmentConfig,
        instance_config: InstanceConfig,
        client: httpx.AsyncClient,
    ) -> None:
        self._config = config
        self._default_region = instance_config.default_region
        self._client = client
        self._probe_policy = RetryPolicy(
            max_attempts=config.probe_attempts,
            delay=config.probe_delay,
            initial_delay=config.initial_delay,
        )

    def base_url(self, service_name: str) -> str:
        return f"http://{service_name}:{self._config.web_port}"

    async def _probe(self, base_url: str) -> None:
        resp = await self._client.get(
            f"{base_url}/health", timeout=self._config.probe_timeout
        )
        resp.raise_for_status()

    async def assign(
        self, instance_id: str, service_name: str, storage: StorageConfig
    ) -> AssignmentResult:
        """Wait for the web server, then POST the bucket assignment.

        The assignment is attempted even if the web server never answered
        its health probe.
        """
        base_url = self.base_url(service_name)

        probe = await run_with_policy(
            self._probe_policy,
            lambda: self._probe(base_url),
            retry_on=retry_always,
            operation=f"web server probe for {instance_id}",
        )
        if not probe.succeeded:
            logger.warning(
                "Web server for instance %s not ready after %d attempts, "
                "attempting storage assignment anyway: %s",
                instance_id,
                probe.attempts,
                probe.error,
                extra={
                    "event": LogEvent.STORAGE_PROBE_FAILED,
                    "instance_id": instance_id,
                },
            )

        if not storage.bucket_id:
            logger.error(
                "Bucket id missing for instance %s, file sync will not work",
                instance_id,
                extra={
                    "event": LogEvent.STORAGE_BUCKET_ID_MISSING,
                    "instance_id": instance_id,
                },
            )

        body = {
            "bucket": storage.bucket,
            "bucketId": storage.bucket_id,
            "region": storage.region or self._default_region,
            "accessKeyId": storage.access_key_id,
            "secretAccessKey": storage.secret_access_key,
        }

        try:
            resp = await self._client.post(
                f"{base_url}/assign-s3-bucket",
                json=body,
                timeout=self._config.request_timeout,
            )
        except httpx.HTTPError as exc:
            return self._failed(instance_id, f"{type(exc).__name__}: {exc}")

        if resp.is_error:
            return self._failed(instance_id, f"{resp.status_code} {resp.text}")

        try:
            data = resp.json()
        except ValueError:
            return self._failed(instance_id, "Invalid JSON response")

        status = data.get("status") if isinstance(data, dict) else None
        if status == "success":
            logger.info(
                "Assigned bucket %s to instance %s",
                storage.bucket,
                instance_id,
                extra={"event": LogEvent.STORAGE_ASSIGNED, "instance_id": instance_id},
            )
            return Assigned()
        if status == "already_assigned":
            logger.info(
                "Instance %s already has a bucket assigned",
                instance_id,
                extra={
                    "event": LogEvent.STORAGE_ALREADY_ASSIGNED,
                    "instance_id": instance_id,
                },
            )
            return AlreadyAssigned()

        error = data.get("error") if isinstance(data, dict) else None
        return self._failed(instance_id, error or "Unknown error")

    @staticmethod
    def _failed(instance_id: str, error: str) -> AssignmentFailed:
        logger.error(
            "Storage assignment failed for instance %s: %s",
            instance_id,
            error,
            extra={"event": LogEvent.STORAGE_ASSIGN_FAILED, "instance_id": instance_id},
        )
        return AssignmentFailed(error=error)
