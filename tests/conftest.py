"""
Shared fixtures: an in-memory runtime executor that records every call.
"""

import asyncio

import pytest

from chaos_monkey.container import Container, State
from chaos_monkey.errors import ExecutionError
from chaos_monkey.runtime.base import Helper, RuntimeExecutor


def make_container(name, id=None, state=State.RUNNING, labels=None):
    return Container(
        id=id or f"{name}-0123456789abcdef",
        name=f"/{name}",
        image="alpine:3.19",
        state=state,
        labels=dict(labels or {}),
    )


class FakeHelper(Helper):
    def __init__(self, executor, helper_id, exit_code=None, output=""):
        self.executor = executor
        self.id = helper_id
        self.exit_code = exit_code
        self._output = output

    async def exec(self, argv):
        self.executor.calls.append(("helper-exec", self.id, list(argv)))
        return self.executor.helper_results.get(argv[0], (0, ""))

    async def wait(self):
        return self.exit_code or 0

    async def poll(self):
        return self.exit_code

    @property
    def output(self):
        return self._output


class FakeExecutor(RuntimeExecutor):
    name = "fake"

    def __init__(self, containers=()):
        self.containers = list(containers)
        self.calls = []
        self.failures = {}
        self.delays = {}
        self.helper_results = {}
        self.helper_exit_code = None
        self.list_error = None
        self.closed = False

    def fail(self, op, container, error=None):
        self.failures[(op, container.id)] = error or ExecutionError(f"{op} failed on {container}", container=container)

    def ops(self, op):
        return [call for call in self.calls if call[0] == op]

    async def _record(self, op, container, *extra):
        delay = self.delays.get(op)
        if delay:
            await asyncio.sleep(delay)
        self.calls.append((op, container.id, *extra))
        error = self.failures.get((op, container.id))
        if error is not None:
            raise error

    async def _list_containers(self, labels, include_stopped):
        if self.list_error is not None:
            raise self.list_error
        listed = []
        for c in self.containers:
            if not include_stopped and c.state != State.RUNNING:
                continue
            if all(_has_label(c, selector) for selector in labels):
                listed.append(c)
        return listed

    async def _exec_in_container(self, container, argv, privileged):
        await self._record("exec", container, list(argv))

    async def _start_network_helper(self, container, image, pull):
        await self._record("helper-start", container, image)
        return FakeHelper(self, f"nethelper-{container.id[:6]}")

    async def _start_cgroup_helper(self, container, image, pull, command, inject=False):
        await self._record("cgroup-start", container, list(command))
        if inject:
            self.calls.append(("cgroup-inject", container.id))
        return FakeHelper(self, f"stress-{container.id[:6]}", exit_code=self.helper_exit_code, output="stress output")

    async def _remove_helper(self, helper):
        self.calls.append(("helper-remove", helper.id))

    async def _kill(self, container, signal):
        await self._record("kill", container, signal)

    async def _stop(self, container, timeout):
        await self._record("stop", container, timeout)

    async def _start(self, container):
        await self._record("start", container)

    async def _pause(self, container):
        await self._record("pause", container)

    async def _unpause(self, container):
        await self._record("unpause", container)

    async def _restart(self, container, timeout):
        await self._record("restart", container, timeout)

    async def _remove(self, container, force, links, volumes):
        await self._record("remove", container, force, links, volumes)

    async def close(self):
        self.closed = True


def _has_label(container, selector):
    key, sep, value = selector.partition("=")
    if not sep:
        return key in container.labels
    return container.labels.get(key) == value


@pytest.fixture
def containers():
    return [make_container("web"), make_container("api"), make_container("db")]


@pytest.fixture
def executor(containers):
    return FakeExecutor(containers)
