"""Models package."""

from .participant import Participant
from .placement import Placement
from .credit_grant import CreditGrant
