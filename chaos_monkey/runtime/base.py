"""
Runtime executor contract shared by the Docker and containerd backends.

Public methods handle dry-run and logging once, here, and delegate the real
work to the underscore methods each backend implements. That keeps dry-run
behaviour identical across engines: every side effect is replaced by a log
line while listing still talks to the engine.
"""

import abc
import contextlib
import logging
from typing import List, Optional, Sequence

from chaos_monkey.aio import detached
from chaos_monkey.container import Container
from chaos_monkey.errors import ExecutionError

logger = logging.getLogger(__name__)

HELPER_TEARDOWN_TIMEOUT = 30.0
HELPER_EXIT_WAIT = 5.0
DEFAULT_STOP_TIMEOUT = 10


class Helper(abc.ABC):
    """A short-lived container running inside a target's network or cgroup context."""

    id: str = ""

    @abc.abstractmethod
    async def exec(self, argv: Sequence[str]):
        """Run one command inside the helper; returns (exit_code, output)."""

    @abc.abstractmethod
    async def wait(self) -> int:
        """Wait for the helper's main process to exit and return its exit code."""

    @abc.abstractmethod
    async def poll(self) -> Optional[int]:
        """Exit code of the main process, or None while it is still running."""

    @property
    def output(self) -> str:
        return ""


class DryRunHelper(Helper):
    id = "dry-run"

    async def exec(self, argv):
        return 0, ""

    async def wait(self):
        return 0

    async def poll(self):
        return None


class RuntimeExecutor(abc.ABC):
    name = "runtime"

    # -- listing ---------------------------------------------------------

    async def list_containers(self, labels: Sequence[str] = (), all: bool = False) -> List[Container]:
        containers = await self._list_containers(tuple(labels or ()), all)
        for c in containers:
            logger.debug(f"found container {c} state={c.state.value}")
        return containers

    # -- command execution -----------------------------------------------

    async def exec_in_container(self, container, command, args=(), privileged=False, dry_run=False):
        argv = [command.replace(" ", ""), *args]
        logger.info(f"{self._prefix(dry_run)}exec in {container}: {' '.join(argv)}")
        if dry_run:
            return
        await self._exec_in_container(container, argv, privileged)

    async def exec_in_target_network(self, container, image, pull, commands, dry_run=False):
        """Run ``commands`` in a throwaway helper sharing the target's network namespace.

        The sequence is not transactional: the first failing command stops it
        and earlier commands keep their effect.
        """
        commands = [list(c) for c in commands]
        if dry_run:
            for i, argv in enumerate(commands, 1):
                logger.info(f"dry-run: would run command {i} in {image} helper for {container}: {' '.join(argv)}")
            return
        async with self.network_helper(container, image, pull) as helper:
            for index, argv in enumerate(commands):
                logger.debug(f"helper {helper.id}: running command {index + 1}/{len(commands)}: {' '.join(argv)}")
                exit_code, output = await helper.exec(argv)
                if exit_code != 0:
                    raise ExecutionError(
                        f"command {index + 1} of {len(commands)} '{' '.join(argv)}' failed "
                        f"in helper for {container} with exit code {exit_code}: {output.strip()}",
                        container=container,
                        command=argv,
                        index=index,
                        exit_code=exit_code,
                        output=output,
                    )

    async def run_network_commands(self, container, tool, arg_lists, image="", pull=False, dry_run=False):
        """Run ``tool`` with each argument list, in a helper when ``image`` is set."""
        if image:
            await self.exec_in_target_network(
                container, image, pull, [[tool, *args] for args in arg_lists], dry_run=dry_run
            )
            return
        for index, args in enumerate(arg_lists):
            try:
                await self.exec_in_container(container, tool, args, privileged=True, dry_run=dry_run)
            except ExecutionError as err:
                raise ExecutionError(
                    f"command {index + 1} of {len(arg_lists)} '{tool} {' '.join(args)}' failed: {err}",
                    container=container,
                    command=[tool, *args],
                    index=index,
                    exit_code=err.exit_code,
                    output=err.output,
                ) from err

    @contextlib.asynccontextmanager
    async def network_helper(self, container, image, pull=False):
        helper = await self._start_network_helper(container, image, pull)
        logger.debug(f"started network helper {helper.id} for {container}")
        async with self._released(helper, container):
            yield helper

    @contextlib.asynccontextmanager
    async def cgroup_helper(self, container, image, pull, command, dry_run=False, inject=False):
        """Helper whose main process (``command``) runs in the target's cgroup.

        With ``inject`` the helper image moves its own process into the target
        cgroup (cg-inject) instead of relying on the engine to place it there.
        """
        if dry_run:
            logger.info(f"dry-run: would run {' '.join(command)} in {image} helper inside {container} cgroup")
            yield DryRunHelper()
            return
        logger.info(f"running {' '.join(command)} in {image} helper inside {container} cgroup")
        helper = await self._start_cgroup_helper(container, image, pull, list(command), inject=inject)
        async with self._released(helper, container):
            yield helper

    async def exec_in_target_cgroup(self, container, image, pull, command, dry_run=False, inject=False):
        async with self.cgroup_helper(container, image, pull, command, dry_run=dry_run, inject=inject) as helper:
            exit_code = await helper.wait()
            if exit_code != 0:
                raise ExecutionError(
                    f"{' '.join(command)} exited with code {exit_code} in {container} cgroup: {helper.output.strip()}",
                    container=container,
                    command=command,
                    exit_code=exit_code,
                    output=helper.output,
                )
            return helper.output

    @contextlib.asynccontextmanager
    async def _released(self, helper, container):
        try:
            yield helper
        except BaseException:
            try:
                await detached(self._remove_helper(helper), HELPER_TEARDOWN_TIMEOUT)
            except Exception as err:
                logger.warning(f"failed to remove helper {helper.id} for {container}: {err}")
            raise
        else:
            try:
                await detached(self._remove_helper(helper), HELPER_TEARDOWN_TIMEOUT)
            except ExecutionError:
                raise
            except Exception as err:
                raise ExecutionError(f"failed to remove helper {helper.id}: {err}", container=container) from err
            logger.debug(f"removed helper {helper.id} for {container}")

    # -- lifecycle -------------------------------------------------------

    async def kill(self, container, signal="SIGKILL", dry_run=False):
        logger.info(f"{self._prefix(dry_run)}killing {container} with {signal}")
        if not dry_run:
            await self._kill(container, signal)

    async def stop(self, container, timeout=DEFAULT_STOP_TIMEOUT, dry_run=False):
        logger.info(f"{self._prefix(dry_run)}stopping {container} (timeout {timeout}s)")
        if not dry_run:
            await self._stop(container, timeout)

    async def start(self, container, dry_run=False):
        logger.info(f"{self._prefix(dry_run)}starting {container}")
        if not dry_run:
            await self._start(container)

    async def pause(self, container, dry_run=False):
        logger.info(f"{self._prefix(dry_run)}pausing {container}")
        if not dry_run:
            await self._pause(container)

    async def unpause(self, container, dry_run=False):
        logger.info(f"{self._prefix(dry_run)}unpausing {container}")
        if not dry_run:
            await self._unpause(container)

    async def restart(self, container, timeout=DEFAULT_STOP_TIMEOUT, dry_run=False):
        logger.info(f"{self._prefix(dry_run)}restarting {container} (timeout {timeout}s)")
        if not dry_run:
            await self._restart(container, timeout)

    async def remove(self, container, force=False, links=False, volumes=False, dry_run=False):
        logger.info(f"{self._prefix(dry_run)}removing {container} force={force} links={links} volumes={volumes}")
        if not dry_run:
            await self._remove(container, force, links, volumes)

    async def close(self):
        pass

    @staticmethod
    def _prefix(dry_run):
        return "dry-run: " if dry_run else ""

    # -- backend hooks ---------------------------------------------------

    @abc.abstractmethod
    async def _list_containers(self, labels, all) -> List[Container]: ...

    @abc.abstractmethod
    async def _exec_in_container(self, container, argv, privileged): ...

    @abc.abstractmethod
    async def _start_network_helper(self, container, image, pull) -> Helper: ...

    @abc.abstractmethod
    async def _start_cgroup_helper(self, container, image, pull, command, inject=False) -> Helper: ...

    @abc.abstractmethod
    async def _remove_helper(self, helper): ...

    @abc.abstractmethod
    async def _kill(self, container, signal): ...

    @abc.abstractmethod
    async def _stop(self, container, timeout): ...

    @abc.abstractmethod
    async def _start(self, container): ...

    @abc.abstractmethod
    async def _pause(self, container): ...

    @abc.abstractmethod
    async def _unpause(self, container): ...

    @abc.abstractmethod
    async def _restart(self, container, timeout): ...

    @abc.abstractmethod
    async def _remove(self, container, force, links, volumes): ...
