"""
Docker backend built on the docker SDK.

The SDK is synchronous, so every call is pushed to a worker thread with
asyncio.to_thread; the executor keeps no state besides the client and is
safe to share between concurrent targets.
"""

import asyncio
import logging
import uuid

import docker
from docker.errors import DockerException, NotFound
from docker.types import Mount
from docker.utils import parse_repository_tag
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout, RequestException

from chaos_monkey.container import SKIP_LABEL, Container
from chaos_monkey.errors import ExecutionError
from chaos_monkey.runtime.base import Helper, RuntimeExecutor

logger = logging.getLogger(__name__)

DOCKER_SOCKET = "/var/run/docker.sock"
CGROUP_FS = "/sys/fs/cgroup"


def _decode(output):
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return str(output)


class DockerHelper(Helper):
    def __init__(self, executor, container):
        self.executor = executor
        self.container = container
        self.id = container.id
        self._output = ""

    async def exec(self, argv):
        result = await self.executor._call(self.container.exec_run, list(argv))
        return result.exit_code, _decode(result.output)

    async def wait(self):
        status = await self.executor._call(self.container.wait)
        self._output = _decode(await self.executor._call(self.container.logs))
        return int(status.get("StatusCode", -1))

    async def poll(self):
        await self.executor._call(self.container.reload)
        state = self.container.attrs.get("State") or {}
        if state.get("Status") in ("exited", "dead"):
            self._output = _decode(await self.executor._call(self.container.logs))
            return int(state.get("ExitCode", -1))
        return None

    @property
    def output(self):
        return self._output


class DockerExecutor(RuntimeExecutor):
    name = "docker"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, settings):
        try:
            if settings.docker_host:
                client = docker.DockerClient(base_url=settings.docker_host)
            else:
                client = docker.from_env()
        except DockerException as err:
            raise ExecutionError(f"failed to connect to docker: {err}") from err
        return cls(client)

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except DockerException as err:
            raise ExecutionError(f"docker: {err}") from err
        except RequestException as err:
            raise ExecutionError(f"docker engine unreachable: {err}") from err

    async def _get(self, container):
        return await self._call(self.client.containers.get, container.id)

    async def _list_containers(self, labels, all):
        filters = {"label": list(labels)} if labels else {}
        listed = await self._call(self.client.containers.list, all=all, filters=filters)
        return [Container.from_docker(c.attrs) for c in listed]

    async def _exec_in_container(self, container, argv, privileged):
        target = await self._get(container)
        command = argv[0]
        # surface a clear error instead of an opaque exec failure
        check = await self._call(target.exec_run, ["which", command])
        if check.exit_code != 0:
            raise ExecutionError(
                f"command '{command}' not found inside the {container} container",
                container=container,
                command=argv,
                exit_code=check.exit_code,
            )
        result = await self._call(target.exec_run, argv, privileged=privileged, user="root")
        output = _decode(result.output)
        logger.debug(f"{container}: {' '.join(argv)} -> {result.exit_code} {output.strip()}")
        if result.exit_code != 0:
            raise ExecutionError(
                f"command '{' '.join(argv)}' failed in {container} with exit code {result.exit_code}: {output.strip()}",
                container=container,
                command=argv,
                exit_code=result.exit_code,
                output=output,
            )

    async def _pull(self, image):
        repository, tag = parse_repository_tag(image)
        logger.debug(f"pulling image {image}")
        await self._call(self.client.images.pull, repository, tag=tag or "latest")

    async def _start_network_helper(self, container, image, pull):
        if pull:
            await self._pull(image)
        helper = await self._create_helper(
            image,
            entrypoint=["tail"],
            command=["-f", "/dev/null"],
            name=f"chaos-nethelper-{uuid.uuid4().hex[:12]}",
            auto_remove=False,
            labels={SKIP_LABEL: "true"},
            cap_add=["NET_ADMIN", "NET_RAW"],
            network_mode=f"container:{container.id}",
            dns=[],
            dns_opt=[],
            dns_search=[],
        )
        return DockerHelper(self, helper)

    async def _create_helper(self, image, **kwargs):
        helper = await self._call(self.client.containers.create, image, **kwargs)
        try:
            await self._call(helper.start)
        except ExecutionError:
            # created but never started, nothing else will clean it up
            try:
                await asyncio.to_thread(helper.remove, force=True)
            except (DockerException, RequestException) as err:
                logger.warning(f"failed to remove helper container {helper.id}: {err}")
            raise
        return helper

    async def _start_cgroup_helper(self, container, image, pull, command, inject=False):
        if pull:
            await self._pull(image)
        if inject:
            return await self._start_inject_helper(container, image, command)
        # dockhack moves its child into the target container's cgroup
        helper = await self._create_helper(
            image,
            entrypoint=["dockhack", "cg_exec"],
            command=[container.id, *command],
            name=f"chaos-stress-{uuid.uuid4().hex[:12]}",
            auto_remove=False,
            labels={SKIP_LABEL: "true"},
            cap_add=["SYS_ADMIN"],
            security_opt=["apparmor:unconfined"],
            mounts=[
                Mount(target=DOCKER_SOCKET, source=DOCKER_SOCKET, type="bind"),
                Mount(target=CGROUP_FS, source=CGROUP_FS, type="bind"),
            ],
        )
        return DockerHelper(self, helper)

    async def _start_inject_helper(self, container, image, command):
        # cg-inject writes its own pid into the target cgroup, then execs the command
        helper = await self._create_helper(
            image,
            entrypoint=["cg-inject"],
            command=["--target-id", container.id, "--", *command],
            name=f"chaos-stress-{uuid.uuid4().hex[:12]}",
            auto_remove=False,
            labels={SKIP_LABEL: "true"},
            cap_add=["SYS_ADMIN"],
            security_opt=["apparmor:unconfined"],
            cgroupns="host",
            mounts=[Mount(target=CGROUP_FS, source=CGROUP_FS, type="bind")],
        )
        return DockerHelper(self, helper)

    async def _remove_helper(self, helper):
        try:
            await asyncio.to_thread(helper.container.remove, force=True)
        except NotFound:
            logger.debug(f"helper {helper.id} already removed")
        except (DockerException, RequestException) as err:
            raise ExecutionError(f"failed to remove helper container {helper.id}: {err}") from err

    async def _kill(self, container, signal):
        target = await self._get(container)
        await self._call(target.kill, signal=signal)

    async def _stop(self, container, timeout):
        target = await self._get(container)
        if not container.stop_signal:
            await self._call(target.stop, timeout=timeout)
            return
        await self._call(target.kill, signal=container.stop_signal)
        try:
            await asyncio.to_thread(target.wait, timeout=timeout)
        except (ReadTimeout, RequestsConnectionError):
            logger.debug(f"{container} did not stop on {container.stop_signal}, sending SIGKILL")
            await self._call(target.kill, signal="SIGKILL")
        except DockerException as err:
            raise ExecutionError(f"docker: {err}") from err

    async def _start(self, container):
        target = await self._get(container)
        await self._call(target.start)

    async def _pause(self, container):
        target = await self._get(container)
        await self._call(target.pause)

    async def _unpause(self, container):
        target = await self._get(container)
        await self._call(target.unpause)

    async def _restart(self, container, timeout):
        target = await self._get(container)
        await self._call(target.restart, timeout=timeout)

    async def _remove(self, container, force, links, volumes):
        target = await self._get(container)
        await self._call(target.remove, force=force, link=links, v=volumes)

    async def close(self):
        await asyncio.to_thread(self.client.close)
