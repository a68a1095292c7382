"""Host resource access: subprocess execution and screenshot selection."""

from sandbox_proxy.sandbox.executor import ExecutionResult, SubprocessExecutor
from sandbox_proxy.sandbox.screenshots import ScreenshotSelector

__all__ = ["ExecutionResult", "ScreenshotSelector", "SubprocessExecutor"]
