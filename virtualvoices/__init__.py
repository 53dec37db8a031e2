"""
VirtualVoices CRM backend: AI bot auto-reactivation for WhatsApp prospects
"""

__version__ = "1.0.0"

from .config import settings
from .services.bot_reactivation import BotReactivationService
from .services.reactivation_scheduler import (
    start_bot_reactivation_scheduler,
    stop_bot_reactivation_scheduler,
)

__all__ = [
    "settings",
    "BotReactivationService",
    "start_bot_reactivation_scheduler",
    "stop_bot_reactivation_scheduler",
]
