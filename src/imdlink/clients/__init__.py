from .imd_client import ImdClient, imd_client_main, run_client

__all__ = ["ImdClient", "imd_client_main", "run_client"]
