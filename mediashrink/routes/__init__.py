from .compress import compress_router

__all__ = ["compress_router"]
