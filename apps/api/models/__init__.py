"""Models package."""

from .user import User
from .project import Project
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .job import Job
