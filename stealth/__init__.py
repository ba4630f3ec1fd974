"""CRAWL Stealth — Browser context profiles and request pacing."""
from .fingerprint import ContextProfiles
from .behavior import Pacing

__all__ = ["ContextProfiles", "Pacing"]
