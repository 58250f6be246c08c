"""Models package."""

from .user import User
from .credit_record import CreditRecord
from .credit_reservation import CreditReservation
from .payment import Payment
from .product_idea import ProductIdea, ProductRevision
from .tech_file import TechFile, TechFileCollection
from .image_analysis import ImageAnalysisCache
from .background_task import BackgroundTask
