"""Error taxonomy for bundling runs."""


class BundleError(RuntimeError):
    """Raised when bundling fails.

    :ivar exit_code: Process exit code the CLI reports for this error.
    """

    exit_code: int = 1


class MissingSeedArtifact(BundleError):
    """Raised when the main executable to bundle does not exist."""

    exit_code = 2


class NoNativeLibraryInstallation(BundleError):
    """Raised when no source library installation can be located."""

    exit_code = 3


class SigningUnavailable(BundleError):
    """Raised when the platform requires signing and no signer is installed."""

    exit_code = 4


class UnresolvedDependency(BundleError):
    """Raised when a required plugin cannot be found."""

    exit_code = 5


class UnsupportedArtifact(BundleError):
    """Raised when a file is not a binary of the expected loader ABI.

    This only aborts processing of that one artifact.
    """


class UnsafeOutputRoot(BundleError):
    """Raised when emptying the output directory would delete the build's own inputs."""

    exit_code = 6
