"""Models package."""

from .user_account import UserAccount
from .credit_ledger import LedgerEntry
from .generation import GenerationRecord
from .public_generation import PublicGeneration
from .generation_stat import GenerationStatCounter
