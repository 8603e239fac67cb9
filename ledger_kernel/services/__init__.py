from ledger_kernel.services.base import BaseService

__all__ = ["BaseService"]
