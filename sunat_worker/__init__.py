"""
Cola de envíos SUNAT: store SQLite, scheduler, máquina de estados y worker
"""
from .scheduler import compute_backoff
from .service import SunatService
from .state_machine import Transition, reset, transition
from .store import DocumentStore, SqliteStore
from .worker import SunatWorker

__all__ = [
    'compute_backoff',
    'SunatService',
    'Transition',
    'reset',
    'transition',
    'DocumentStore',
    'SqliteStore',
    'SunatWorker',
]
