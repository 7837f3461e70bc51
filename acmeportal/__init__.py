from .server import AcmePortal
from .client import AcmeClient
from .orchestrator import ChallengeOrchestrator
from .version import __version__

__all__ = ["AcmePortal", "AcmeClient", "ChallengeOrchestrator"]
__version__ = __version__
