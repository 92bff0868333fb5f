"""Error taxonomy for the VPN tunnel manager."""


class VpnTunnelError(Exception):
    """Base class for every error raised by the tunnel manager."""


class ConnectivityError(VpnTunnelError):
    """SSH host unreachable, authentication failure or dead session."""


class RemoteCommandError(VpnTunnelError):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, status: int, output: str = ""):
        self.command = command
        self.status = status
        self.output = output
        detail = f": {output.strip()}" if output.strip() else ""
        super().__init__(f"command '{command}' exited with status {status}{detail}")


class ResourceExhaustedError(VpnTunnelError):
    """No free listen port (or address block) left in the configured range."""


class ProvisioningError(VpnTunnelError):
    """Key generation, upload or remote preparation failed."""


class PrivilegeError(VpnTunnelError):
    """Local privilege-escalation secret missing or rejected."""


class SecretRequiredError(PrivilegeError):
    """A secret is needed and none is cached or stored."""


class InvalidSecretError(PrivilegeError):
    """The supplied secret was rejected by the validation probe."""


class RuntimeFailure(VpnTunnelError):
    """A running session broke (remote process gone, tunnel unreachable)."""


class RemoteProcessExited(RuntimeFailure):
    """The remote tunnel server exited while it was expected to run."""


class TunnelUnreachableError(RuntimeFailure):
    """The tunnel gateway could not be reached across the tunnel."""


class TargetError(VpnTunnelError):
    """Empty or invalid target input, or an empty resolved pool."""


class SessionBusyError(VpnTunnelError):
    """A pipeline is already in flight or a session is connected."""


class DeploymentError(VpnTunnelError):
    """A deployment pipeline step failed."""

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")
