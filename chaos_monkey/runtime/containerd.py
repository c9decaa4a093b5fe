"""
containerd backend driven through the ``ctr`` client.

containerd has no "join another container's network" flag, so helpers are
created with the target task's namespace path (/proc/<pid>/ns/net) or cgroup
path (from the target's OCI spec) passed explicitly.
"""

import asyncio
import json
import logging
import uuid
from typing import Dict, NamedTuple, Tuple

from chaos_monkey.container import SKIP_LABEL, Container
from chaos_monkey.errors import ExecutionError
from chaos_monkey.runtime.base import HELPER_EXIT_WAIT, Helper, RuntimeExecutor

logger = logging.getLogger(__name__)

CGROUP_FS = "/sys/fs/cgroup"
KILL_TIMEOUT = 30.0
POLL_INTERVAL = 0.2


class CtrResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self):
        return (self.stdout + self.stderr).strip()


def _label_matches(labels, selector):
    key, sep, value = selector.partition("=")
    if not sep:
        return key in labels
    return labels.get(key) == value


def _not_found(result):
    return "not found" in result.stderr.lower()


def _signal_name(signal):
    signal = str(signal).strip().upper()
    if signal.isdigit():
        return signal
    return signal if signal.startswith("SIG") else f"SIG{signal}"


class ContainerdHelper(Helper):
    def __init__(self, executor, helper_id, process=None):
        self.executor = executor
        self.id = helper_id
        self.process = process
        self._output = ""
        self._exit_code = None

    async def exec(self, argv):
        result = await self.executor._exec(self.id, argv)
        return result.returncode, result.output

    async def wait(self):
        if self.process is None:
            while await self.poll() is None:
                await asyncio.sleep(POLL_INTERVAL)
            return self._exit_code
        stdout, stderr = await self.process.communicate()
        self._output = (stdout or b"").decode("utf-8", errors="replace") + (stderr or b"").decode(
            "utf-8", errors="replace"
        )
        self._exit_code = self.process.returncode
        return self._exit_code

    async def poll(self):
        if self.process is not None:
            return self.process.returncode
        tasks = await self.executor._tasks()
        if self.id not in tasks or tasks[self.id][1] == "STOPPED":
            self._exit_code = 0
            return 0
        return None

    @property
    def output(self):
        return self._output


class ContainerdExecutor(RuntimeExecutor):
    name = "containerd"

    def __init__(self, address, namespace, ctr_path="ctr"):
        self.address = address
        self.namespace = namespace
        self.ctr_path = ctr_path

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.containerd_address, settings.containerd_namespace, settings.ctr_path)

    def _argv(self, args):
        return [self.ctr_path, "--address", self.address, "--namespace", self.namespace, *args]

    async def _spawn(self, *args):
        argv = self._argv(args)
        logger.debug(f"spawning {' '.join(argv)}")
        try:
            return await asyncio.create_subprocess_exec(
                *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as err:
            raise ExecutionError(f"failed to run {self.ctr_path}: {err}") from err

    async def _ctr(self, *args, check=True) -> CtrResult:
        process = await self._spawn(*args)
        stdout, stderr = await process.communicate()
        result = CtrResult(
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise ExecutionError(
                f"ctr {' '.join(args)} failed with exit code {result.returncode}: {result.stderr.strip()}",
                command=list(args),
                exit_code=result.returncode,
                output=result.output,
            )
        return result

    async def _tasks(self) -> Dict[str, Tuple[int, str]]:
        """Map of container id -> (pid, status) from ``ctr tasks ls``."""
        result = await self._ctr("tasks", "ls")
        tasks = {}
        for line in result.stdout.splitlines()[1:]:
            fields = line.split()
            if len(fields) >= 3:
                tasks[fields[0]] = (int(fields[1]) if fields[1].isdigit() else 0, fields[2].upper())
        return tasks

    async def _info(self, container_id):
        result = await self._ctr("containers", "info", container_id)
        try:
            return json.loads(result.stdout)
        except ValueError as err:
            raise ExecutionError(f"unexpected container info for {container_id}: {err}") from err

    async def _task_pid(self, container):
        pid, status = (await self._tasks()).get(container.id, (0, ""))
        if not status:
            raise ExecutionError(f"target container {container} is not running (no task found)", container=container)
        if status not in ("RUNNING", "PAUSED"):
            raise ExecutionError(
                f"target container {container} task is not running or paused (status: {status})",
                container=container,
            )
        return pid

    async def _exec(self, container_id, argv) -> CtrResult:
        exec_id = f"chaos-exec-{uuid.uuid4().hex[:12]}"
        return await self._ctr("tasks", "exec", "--exec-id", exec_id, container_id, *argv, check=False)

    async def _wait_stopped(self, container_id, timeout) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = (await self._tasks()).get(container_id, (0, ""))[1]
            if status in ("", "STOPPED"):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(POLL_INTERVAL)

    # -- listing ---------------------------------------------------------

    async def _list_containers(self, labels, all):
        ids = (await self._ctr("containers", "ls", "-q")).stdout.split()
        tasks = await self._tasks()
        containers = []
        for container_id in ids:
            try:
                info = await self._info(container_id)
            except ExecutionError as err:
                logger.warning(f"skipping container {container_id}: {err}")
                continue
            status = tasks.get(container_id, (0, ""))[1]
            if not all and status != "RUNNING":
                continue
            container = Container.from_containerd(info, status)
            if all_labels_match(container.labels, labels):
                containers.append(container)
        return containers

    # -- exec --------------------------------------------------------------

    async def _exec_in_container(self, container, argv, privileged):
        command = argv[0]
        check = await self._exec(container.id, ["which", command])
        if check.returncode != 0:
            raise ExecutionError(
                f"command '{command}' not found inside the {container} container",
                container=container,
                command=argv,
                exit_code=check.returncode,
            )
        result = await self._exec(container.id, argv)
        logger.debug(f"{container}: {' '.join(argv)} -> {result.returncode} {result.output}")
        if result.returncode != 0:
            raise ExecutionError(
                f"command '{' '.join(argv)}' failed in {container} with exit code {result.returncode}: {result.output}",
                container=container,
                command=argv,
                exit_code=result.returncode,
                output=result.output,
            )

    # -- helpers -------------------------------------------------------------

    async def _pull(self, image):
        logger.debug(f"pulling image {image}")
        await self._ctr("images", "pull", image)

    async def _start_network_helper(self, container, image, pull):
        pid = await self._task_pid(container)
        if pull:
            await self._pull(image)
        helper_id = f"chaos-nethelper-{container.id[:12]}-{uuid.uuid4().hex[:8]}"
        try:
            await self._ctr(
                "run", "-d",
                "--label", f"{SKIP_LABEL}=true",
                "--with-ns", f"network:/proc/{pid}/ns/net",
                "--cap-add", "CAP_NET_ADMIN",
                "--cap-add", "CAP_NET_RAW",
                image, helper_id, "sleep", "infinity",
            )
        except ExecutionError:
            await self._delete_container(helper_id, strict=False)
            raise
        return ContainerdHelper(self, helper_id)

    async def _start_cgroup_helper(self, container, image, pull, command, inject=False):
        info = await self._info(container.id)
        spec = info.get("Spec") or {}
        cgroup_path = (spec.get("linux") or {}).get("cgroupsPath")
        if not cgroup_path:
            raise ExecutionError(f"could not determine cgroups path for target container {container}", container=container)
        logger.debug(f"target container {container} cgroup path: {cgroup_path}")
        if pull:
            await self._pull(image)
        helper_id = f"chaos-stress-{container.id[:12]}-{uuid.uuid4().hex[:8]}"
        if inject:
            # cg-inject joins the cgroup itself, so it needs the hierarchy writable
            placement = ["--mount", f"type=bind,src={CGROUP_FS},dst={CGROUP_FS},options=rbind:rw"]
            command = ["cg-inject", "--cgroup-path", cgroup_path, "--", *command]
        else:
            placement = [
                "--cgroup", cgroup_path,
                "--mount", f"type=bind,src={CGROUP_FS},dst={CGROUP_FS},options=rbind:ro",
            ]
        process = await self._spawn(
            "run",
            "--label", f"{SKIP_LABEL}=true",
            "--cap-add", "CAP_SYS_ADMIN",
            "--cap-add", "CAP_KILL",
            *placement,
            image, helper_id, *command,
        )
        return ContainerdHelper(self, helper_id, process)

    async def _remove_helper(self, helper):
        await self._ctr("tasks", "kill", "-s", "SIGKILL", helper.id, check=False)
        if not await self._wait_stopped(helper.id, HELPER_EXIT_WAIT):
            logger.warning(f"helper {helper.id} did not exit within {HELPER_EXIT_WAIT}s")
        if helper.process is not None and helper.process.returncode is None:
            # read the pipes while waiting, a full pipe would block ctr forever
            try:
                await asyncio.wait_for(helper.wait(), HELPER_EXIT_WAIT)
            except asyncio.TimeoutError:
                helper.process.kill()
                await helper.process.communicate()
        await self._ctr("tasks", "delete", helper.id, check=False)
        await self._delete_container(helper.id)

    async def _delete_container(self, container_id, strict=True):
        # the snapshot is removed together with the container
        result = await self._ctr("containers", "delete", container_id, check=False)
        if result.returncode != 0 and not _not_found(result):
            if strict:
                raise ExecutionError(f"failed to delete container {container_id}: {result.stderr.strip()}")
            logger.warning(f"failed to delete container {container_id}: {result.stderr.strip()}")

    # -- lifecycle -------------------------------------------------------

    async def _kill(self, container, signal):
        await self._ctr("tasks", "kill", "-s", _signal_name(signal), container.id)

    async def _stop(self, container, timeout):
        signal = _signal_name(container.stop_signal or "SIGTERM")
        result = await self._ctr("tasks", "kill", "-s", signal, container.id, check=False)
        if result.returncode != 0 and not _not_found(result):
            raise ExecutionError(f"failed to send {signal} to {container}: {result.stderr.strip()}", container=container)
        if not await self._wait_stopped(container.id, timeout):
            logger.debug(f"graceful stop timeout for {container}, sending SIGKILL")
            await self._ctr("tasks", "kill", "-s", "SIGKILL", container.id, check=False)
            if not await self._wait_stopped(container.id, KILL_TIMEOUT):
                raise ExecutionError(f"timeout waiting for SIGKILL on {container}", container=container)
        await self._ctr("tasks", "delete", container.id, check=False)

    async def _start(self, container):
        # a stopped task has to be deleted before a new one can start
        await self._ctr("tasks", "delete", container.id, check=False)
        await self._ctr("tasks", "start", "-d", container.id)

    async def _pause(self, container):
        await self._ctr("tasks", "pause", container.id)

    async def _unpause(self, container):
        await self._ctr("tasks", "resume", container.id)

    async def _restart(self, container, timeout):
        await self._stop(container, timeout)
        await self._start(container)

    async def _remove(self, container, force, links, volumes):
        if links or volumes:
            logger.debug(f"containerd: links/volumes removal is not supported, ignored for {container}")
        if force:
            await self._ctr("tasks", "kill", "-s", "SIGKILL", container.id, check=False)
            await self._wait_stopped(container.id, HELPER_EXIT_WAIT)
            await self._ctr("tasks", "delete", container.id, check=False)
        await self._delete_container(container.id)


def all_labels_match(labels, selectors) -> bool:
    return all(_label_matches(labels, s) for s in selectors)


