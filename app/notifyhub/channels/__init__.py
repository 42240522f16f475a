"""Provider adapters, one per delivery channel."""

from .base import ChannelAdapter, PushDestination
from .email import EmailAdapter
from .push import FcmPushAdapter, build_push_adapter, normalize_topic
from .sms import FreeMobileSmsAdapter, TwilioSmsAdapter, build_sms_adapter, normalize_phone_number

__all__ = [
    "ChannelAdapter",
    "PushDestination",
    "EmailAdapter",
    "FcmPushAdapter",
    "FreeMobileSmsAdapter",
    "TwilioSmsAdapter",
    "build_push_adapter",
    "build_sms_adapter",
    "normalize_phone_number",
    "normalize_topic",
]
