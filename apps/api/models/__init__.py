"""Models package."""

from .user import User
from .creator_genome import CreatorGenome
from .regret_entry import RegretEntry
from .mutation_event import MutationEvent
from .mutation_alert import MutationAlert
