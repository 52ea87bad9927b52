"""Services: certificate pipeline, points, activities and external clients"""
from .ipfs_service import IPFSService
from .ledger_service import LedgerService

__all__ = ['IPFSService', 'LedgerService']
