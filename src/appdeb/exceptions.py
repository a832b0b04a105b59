from typing import cast


class AppdebRuntimeError(RuntimeError):
    @property
    def message(self) -> str:
        return cast("str", self.args[0])


class ValidationError(AppdebRuntimeError):
    pass


class PackageEnvironmentError(AppdebRuntimeError):
    pass


class UnsupportedUmaskError(PackageEnvironmentError):
    @property
    def umask(self) -> int:
        return cast("int", self.args[1])


class PackageIOError(AppdebRuntimeError):
    @property
    def path(self) -> str:
        return cast("str", self.args[1])


class ToolingError(AppdebRuntimeError):
    @property
    def tool(self) -> str:
        return cast("str", self.args[1])
