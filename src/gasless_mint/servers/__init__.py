from .apps import MintServer

__all__ = ["MintServer"]
