"""
Docker Runtime - Attacker and victim container lifecycle

Features:
- Attacker sandboxes from a fixed image, one per player or team
- Docker-assigned host ports, network auto-detected from our own container
- Label-scoped bulk start/stop/remove with partial results
- Victim image builds from per-level Dockerfile contexts
- Attacker attribution from a source IP seen by a victim
"""

import asyncio
import io
import json
import os
import secrets
import socket
import tarfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiodocker
import structlog
from aiodocker.containers import DockerContainer
from aiodocker.exceptions import DockerError
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from ctfrange.core.config import Settings
from ctfrange.core.exceptions import ContainerRuntimeError

from ..models import (
    LABEL_APP,
    LABEL_LEVEL,
    LABEL_SESSION,
    LABEL_TYPE,
    BulkAction,
    BulkOperationResult,
    ContainerKind,
    ContainerRef,
    NetworkConfig,
    RuntimeContainer,
)

logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = (409, 429, 500, 503)

# Networks every engine has; never treated as "our" network
BUILTIN_NETWORKS = ("bridge", "host", "none")


def _runtime_error(
    operation: str,
    exc: Exception,
    container: Optional[str] = None,
) -> ContainerRuntimeError:
    """Wrap an engine failure with operation context."""
    if isinstance(exc, DockerError):
        return ContainerRuntimeError(
            f"Docker error during {operation}: {exc.message}",
            operation=operation,
            container=container,
            retryable=exc.status in RETRYABLE_STATUSES,
            status=exc.status,
        )
    return ContainerRuntimeError(
        f"{operation} failed: {exc}",
        operation=operation,
        container=container,
        retryable=isinstance(exc, (OSError, asyncio.TimeoutError)),
    )


def _summary(container: DockerContainer) -> Dict[str, Any]:
    """Listing data that came back with ``containers.list``."""
    return getattr(container, "_container", None) or {}


def _display_name(container: DockerContainer) -> str:
    names = _summary(container).get("Names") or []
    if names:
        return names[0].lstrip("/")
    return _summary(container).get("Name", "unknown").lstrip("/")


class DockerRuntime:
    """
    Container runtime adapter over the Docker Engine API.

    Every public call either succeeds or raises ContainerRuntimeError;
    nothing here retries an engine operation on the caller's behalf.
    """

    def __init__(
        self,
        settings: Settings,
        docker: Optional[aiodocker.Docker] = None,
    ):
        self.settings = settings
        self.docker_url = settings.docker_url or os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock")
        self._docker: Optional[aiodocker.Docker] = docker
        self._network_name: Optional[str] = None

    async def _get_docker(self) -> aiodocker.Docker:
        """Get or create Docker client."""
        if self._docker is None:
            self._docker = aiodocker.Docker(url=self.docker_url)
        return self._docker

    async def close(self) -> None:
        if self._docker is not None:
            await self._docker.close()
            self._docker = None

    def base_labels(self, kind: ContainerKind, session_id: Optional[str] = None) -> Dict[str, str]:
        labels = {LABEL_APP: self.settings.app_label, LABEL_TYPE: kind.value}
        if session_id:
            labels[LABEL_SESSION] = str(session_id)
        return labels

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    async def detect_network(self) -> str:
        """
        Network new containers join.

        Uses the first user-defined network of the orchestrator's own
        container; falls back to the configured default when we are not
        running in a container or it only has builtin networks.
        """
        if self._network_name:
            return self._network_name

        network = self.settings.default_network
        own_id = os.getenv("HOSTNAME") or socket.gethostname()
        try:
            docker = await self._get_docker()
            info = await docker.containers.container(own_id).show()
            networks = (info.get("NetworkSettings") or {}).get("Networks") or {}
            custom = [name for name in networks if name not in BUILTIN_NETWORKS]
            if custom:
                network = custom[0]
        except DockerError as e:
            logger.info(
                "Orchestrator container not inspectable, using default network",
                hostname=own_id,
                network=network,
                status=e.status,
            )
        except Exception as e:
            raise _runtime_error("detect_network", e, own_id) from e

        self._network_name = network
        logger.info("Container network resolved", network=network)
        return network

    # ------------------------------------------------------------------
    # Attackers
    # ------------------------------------------------------------------

    async def create_attacker(
        self,
        name: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> RuntimeContainer:
        """
        Create and start an attacker sandbox.

        Args:
            name: Container name; generated when omitted
            session_id: Owning session, stored as a label for teardown

        Returns:
            RuntimeContainer with its access URL; ``ready`` tells whether the
            service came up within the bounded wait
        """
        container_name = name or f"range-attacker-{secrets.token_hex(4)}"
        port_key = f"{self.settings.attacker_service_port}/tcp"
        container: Optional[DockerContainer] = None

        try:
            docker = await self._get_docker()
            network = await self.detect_network()

            config = {
                "Image": self.settings.attacker_image,
                "Tty": True,
                "OpenStdin": True,
                "Labels": self.base_labels(ContainerKind.ATTACKER, session_id),
                "ExposedPorts": {port_key: {}},
                "HostConfig": {
                    "PortBindings": {port_key: [{"HostPort": "0"}]},  # Random host port
                    "NetworkMode": network,
                },
            }

            logger.info(
                "Creating attacker container",
                name=container_name,
                image=config["Image"],
                session_id=session_id,
            )

            container = await docker.containers.create(config=config, name=container_name)
            await container.start()
            info, ready = await self._wait_until_ready(container)

        except ContainerRuntimeError:
            raise
        except Exception as e:
            logger.error(
                "Failed to create attacker container",
                name=container_name,
                error=str(e),
            )
            if container is not None:
                await self._discard(container, container_name)
            raise _runtime_error("create_attacker", e, container_name) from e

        runtime = self._from_inspect(info, ContainerKind.ATTACKER, network)
        runtime.name = container_name
        runtime.ready = ready
        runtime.access_url = self._attacker_url(runtime)

        if not runtime.access_url:
            await self._discard(container, container_name)
            raise ContainerRuntimeError(
                "Failed to get assigned port from Docker",
                operation="create_attacker",
                container=container_name,
                retryable=True,
            )

        logger.info(
            "Attacker container started",
            name=container_name,
            container_id=runtime.short_id,
            ready=ready,
        )
        return runtime

    async def _wait_until_ready(self, container: DockerContainer) -> Tuple[Dict[str, Any], bool]:
        """Poll inspect until running with a published port, bounded."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.readiness_attempts)),
            wait=wait_fixed(self.settings.readiness_interval_seconds),
            retry=retry_if_result(lambda info: not self._is_ready(info)),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        info = await retrying(container.show)
        return info, self._is_ready(info)

    def _is_ready(self, info: Dict[str, Any]) -> bool:
        state = info.get("State") or {}
        if not state.get("Running"):
            return False
        ports = NetworkConfig.from_inspect(info).port_mappings
        return self.settings.attacker_service_port in ports

    def _attacker_url(self, runtime: RuntimeContainer) -> Optional[str]:
        host_port = runtime.network.port_mappings.get(self.settings.attacker_service_port)
        if host_port:
            return f"http://{self.settings.public_host}:{host_port}/{runtime.short_id}/"
        if runtime.network.network_name and runtime.network.network_name not in BUILTIN_NETWORKS:
            # Shared network: reachable by name from the proxy
            return f"http://{runtime.name}:{self.settings.attacker_service_port}/{runtime.short_id}/"
        return None

    def _from_inspect(
        self,
        info: Dict[str, Any],
        kind: ContainerKind,
        network: Optional[str] = None,
    ) -> RuntimeContainer:
        config = info.get("Config") or {}
        state = info.get("State") or {}
        return RuntimeContainer(
            runtime_id=info.get("Id", ""),
            name=(info.get("Name") or "").lstrip("/"),
            kind=kind,
            image=config.get("Image"),
            state=state.get("Status"),
            labels=dict(config.get("Labels") or {}),
            network=NetworkConfig.from_inspect(info, network),
        )

    async def remove_container(self, runtime_id: str) -> bool:
        """
        Force-remove a single container.

        Returns:
            False when the container was already gone
        """
        try:
            docker = await self._get_docker()
            await docker.containers.container(runtime_id).delete(force=True, v=True)
            return True
        except DockerError as e:
            if e.status == 404:
                return False
            raise _runtime_error("remove_container", e, runtime_id[:12]) from e
        except Exception as e:
            raise _runtime_error("remove_container", e, runtime_id[:12]) from e

    async def _discard(self, container: DockerContainer, name: str) -> None:
        """Best-effort removal of a container that never became usable."""
        try:
            await container.delete(force=True, v=True)
        except Exception as e:
            logger.warning("Failed to discard container", name=name, error=str(e))

    # ------------------------------------------------------------------
    # Label-scoped bulk operations
    # ------------------------------------------------------------------

    async def list_by_labels(
        self,
        labels: Dict[str, str],
        include_stopped: bool = True,
    ) -> List[DockerContainer]:
        """List containers carrying every given label."""
        filters = {"label": [f"{key}={value}" for key, value in labels.items()]}
        try:
            docker = await self._get_docker()
            return await docker.containers.list(all=include_stopped, filters=json.dumps(filters))
        except Exception as e:
            raise _runtime_error("list_containers", e, ",".join(filters["label"])) from e

    async def stop_by_labels(self, labels: Dict[str, str]) -> BulkOperationResult:
        return await self._bulk(BulkAction.STOP, labels)

    async def start_by_labels(self, labels: Dict[str, str]) -> BulkOperationResult:
        return await self._bulk(BulkAction.START, labels)

    async def remove_by_labels(self, labels: Dict[str, str]) -> BulkOperationResult:
        return await self._bulk(BulkAction.REMOVE, labels)

    async def _bulk(self, action: BulkAction, labels: Dict[str, str]) -> BulkOperationResult:
        """Fan an action out to every matching container; failures are collected."""
        labels = {LABEL_APP: self.settings.app_label, **labels}
        containers = await self.list_by_labels(labels)
        result = BulkOperationResult(action=action, labels=labels)

        outcomes = await asyncio.gather(
            *(self._apply(action, container) for container in containers)
        )
        for ref, applied in outcomes:
            if ref.error:
                result.failed.append(ref)
            elif applied:
                result.succeeded.append(ref)

        logger.info(
            "Bulk container operation finished",
            action=action.value,
            labels=labels,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    async def _apply(
        self,
        action: BulkAction,
        container: DockerContainer,
    ) -> Tuple[ContainerRef, bool]:
        """Apply one action. Returns (ref, applied); errors land on the ref."""
        state = _summary(container).get("State")
        ref = ContainerRef(runtime_id=container.id, name=_display_name(container))
        try:
            if action == BulkAction.STOP:
                if state in ("exited", "created", "dead"):
                    return ref, False
                await container.stop(t=10)

            elif action == BulkAction.START:
                if state == "running":
                    return ref, False
                await container.start()

            elif action == BulkAction.REMOVE:
                if state == "running":
                    try:
                        await container.stop(t=10)
                    except DockerError as e:
                        logger.warning(
                            "Error stopping container before removal",
                            container_id=ref.runtime_id[:12],
                            error=str(e),
                        )
                await container.delete(force=True, v=True)

            return ref, True

        except Exception as e:
            logger.error(
                "Container operation failed",
                action=action.value,
                container_id=ref.runtime_id[:12],
                name=ref.name,
                error=str(e),
            )
            ref.error = str(e)
            return ref, False

    # ------------------------------------------------------------------
    # Victim images and containers
    # ------------------------------------------------------------------

    def victim_image_tag(self, level_key: str) -> str:
        return f"{self.settings.victim_image_prefix}-{level_key}:latest"

    async def image_exists(self, tag: str) -> bool:
        try:
            docker = await self._get_docker()
            await docker.images.inspect(tag)
            return True
        except DockerError as e:
            if e.status == 404:
                return False
            raise _runtime_error("inspect_image", e, tag) from e
        except Exception as e:
            raise _runtime_error("inspect_image", e, tag) from e

    async def build_image(self, tag: str, context_dir: Path) -> None:
        """Build an image from a Dockerfile context directory."""
        if not (context_dir / "Dockerfile").is_file():
            raise ContainerRuntimeError(
                f"No Dockerfile in {context_dir}",
                operation="build_image",
                container=tag,
                retryable=False,
            )

        logger.info("Building image", tag=tag, context=str(context_dir))
        try:
            fileobj = await asyncio.to_thread(_tar_context, context_dir)
            docker = await self._get_docker()
            output = await docker.images.build(fileobj=fileobj, tag=tag, rm=True)
        except Exception as e:
            raise _runtime_error("build_image", e, tag) from e

        errors = [line["error"] for line in output or [] if isinstance(line, dict) and line.get("error")]
        if errors:
            raise ContainerRuntimeError(
                f"Image build failed: {errors[-1].strip()}",
                operation="build_image",
                container=tag,
                retryable=False,
            )
        logger.info("Image built", tag=tag)

    async def ensure_image(self, tag: str, context_dir: Path, rebuild: bool = False) -> bool:
        """
        Build the image unless it already exists.

        Returns:
            True when a build ran
        """
        if not rebuild and await self.image_exists(tag):
            return False
        await self.build_image(tag, context_dir)
        return True

    async def ensure_victim(
        self,
        service_name: str,
        level_key: str,
        session_id: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        rebuild: bool = False,
    ) -> RuntimeContainer:
        """
        Start or reuse the singleton victim container for a level.

        The container is named after the level's service name, so a second
        call for the same session and level finds the same container.
        """
        container: Optional[DockerContainer] = None
        try:
            docker = await self._get_docker()
            network = await self.detect_network()

            if rebuild:
                await self.remove_container(service_name)
            else:
                reused = await self._reuse_victim(docker, service_name, network)
                if reused is not None:
                    return reused

            tag = self.victim_image_tag(level_key)
            await self.ensure_image(tag, Path(self.settings.victim_context_dir) / level_key, rebuild=rebuild)

            labels = self.base_labels(ContainerKind.VICTIM, session_id)
            labels[LABEL_LEVEL] = level_key
            env = {"SERVICE_NAME": service_name, "LEVEL_KEY": level_key, **(environment or {})}

            config = {
                "Image": tag,
                "Hostname": service_name,
                "Labels": labels,
                "Env": [f"{key}={value}" for key, value in env.items()],
                "HostConfig": {
                    "NetworkMode": network,
                    "RestartPolicy": {"Name": "unless-stopped"},
                },
            }

            container = await docker.containers.create(config=config, name=service_name)
            await container.start()
            info = await container.show()

        except ContainerRuntimeError:
            raise
        except Exception as e:
            logger.error("Failed to start victim container", name=service_name, error=str(e))
            if container is not None:
                await self._discard(container, service_name)
            raise _runtime_error("ensure_victim", e, service_name) from e

        logger.info("Victim container started", name=service_name, level_key=level_key)
        runtime = self._from_inspect(info, ContainerKind.VICTIM, network)
        runtime.ready = bool((info.get("State") or {}).get("Running"))
        return runtime

    async def _reuse_victim(
        self,
        docker: aiodocker.Docker,
        service_name: str,
        network: str,
    ) -> Optional[RuntimeContainer]:
        """Existing victim by name, started if needed; None when absent."""
        try:
            existing = await docker.containers.get(service_name)
        except DockerError as e:
            if e.status == 404:
                return None
            raise

        info = await existing.show()
        if not (info.get("State") or {}).get("Running"):
            await existing.start()
            info = await existing.show()

        logger.info("Reusing victim container", name=service_name)
        runtime = self._from_inspect(info, ContainerKind.VICTIM, network)
        runtime.ready = bool((info.get("State") or {}).get("Running"))
        return runtime

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    async def resolve_attacker_by_ip(self, remote_ip: str) -> Optional[RuntimeContainer]:
        """Find the attacker container that owns ``remote_ip``, if any."""
        if not remote_ip:
            return None
        remote_ip = remote_ip.strip()
        if remote_ip.startswith("::ffff:"):
            remote_ip = remote_ip[len("::ffff:"):]

        labels = self.base_labels(ContainerKind.ATTACKER)
        for container in await self.list_by_labels(labels, include_stopped=False):
            try:
                info = await container.show()
            except DockerError as e:
                # Removed between listing and inspect
                logger.warning(
                    "Skipping attacker during IP attribution",
                    container_id=container.id[:12],
                    error=str(e),
                )
                continue
            except Exception as e:
                raise _runtime_error("resolve_attacker", e, container.id[:12]) from e

            runtime = self._from_inspect(info, ContainerKind.ATTACKER)
            if remote_ip in runtime.network.ip_addresses:
                return runtime
        return None


def _tar_context(context_dir: Path) -> io.BytesIO:
    """Pack a build context directory into an in-memory tar stream."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.add(str(context_dir), arcname=".")
    buffer.seek(0)
    return buffer
