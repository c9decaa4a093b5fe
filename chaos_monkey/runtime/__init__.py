"""Container runtime backends, selected once at startup."""

from chaos_monkey.errors import ValidationError
from chaos_monkey.runtime.base import Helper, RuntimeExecutor


def new_executor(settings) -> RuntimeExecutor:
    if settings.runtime == "docker":
        from chaos_monkey.runtime.docker import DockerExecutor

        return DockerExecutor.from_settings(settings)
    if settings.runtime == "containerd":
        from chaos_monkey.runtime.containerd import ContainerdExecutor

        return ContainerdExecutor.from_settings(settings)
    raise ValidationError(f"unknown container runtime {settings.runtime!r}")


__all__ = ["Helper", "RuntimeExecutor", "new_executor"]
