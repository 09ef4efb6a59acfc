from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("imdlink")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "ImdSession",
    "ImdOptions",
    "add_imd_arguments",
    "check_run_configuration",
    "ImdServer",
    "ImdMessage",
    "ProcessGroup",
    "MDEngine",
    "ArrayEngine",
    "ImdClient",
    "imd_client_main",
]


# Lazy attribute loader: import submodules *only when accessed*.
def __getattr__(name):
    """
    Lazy attribute loader that imports and returns public classes on demand.

    Parameters
    ----------
    name : str
        The attribute name requested (e.g., ``"ImdSession"``, ``"ImdServer"``).

    Returns
    -------
    object
        The requested class or function.

    Raises
    ------
    AttributeError
        If the requested attribute is not part of the public API.
    """

    if name == "ImdSession":
        from .session import ImdSession

        return ImdSession

    if name in {"ImdOptions", "add_imd_arguments", "check_run_configuration"}:
        from .config import ImdOptions, add_imd_arguments, check_run_configuration

        return locals()[name]

    if name in {"ImdServer", "ImdMessage"}:
        from .sockets import ImdServer, ImdMessage

        return locals()[name]

    if name == "ProcessGroup":
        from .parallel import ProcessGroup

        return ProcessGroup

    if name in {"MDEngine", "ArrayEngine"}:
        from .engines import MDEngine, ArrayEngine

        return locals()[name]

    if name in {"ImdClient", "imd_client_main"}:
        from .clients.imd_client import ImdClient, imd_client_main

        return locals()[name]

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
