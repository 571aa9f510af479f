"""Provider adapters."""

from .base import ProviderAdapter
from .google import GoogleAdapter
from .apple import AppleAdapter
from .outlook import OutlookAdapter
from .passthrough import PassthroughAdapter
from .registry import AdapterRegistry

__all__ = [
    'ProviderAdapter',
    'GoogleAdapter',
    'AppleAdapter',
    'OutlookAdapter',
    'PassthroughAdapter',
    'AdapterRegistry',
]
