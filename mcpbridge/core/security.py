"""Access control for incoming chat messages."""

import logging
from dataclasses import dataclass

from mcpbridge.validation.config import SecurityConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecurityDecision:
    allowed: bool
    reason: str


class AccessController:
    """
    Decides whether a (user, channel) pair may talk to the bot.

    Admin users always pass. In strict mode both the user and the channel
    must be whitelisted; otherwise either one is enough.
    """

    def __init__(self, config: SecurityConfig):
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def rejection_message(self) -> str:
        return self.config.rejection_message

    def check(self, user_id: str, channel_id: str) -> SecurityDecision:
        """Return the access decision and log it."""
        decision = self._decide(user_id, channel_id)
        self._log(user_id, channel_id, decision)
        return decision

    def _decide(self, user_id: str, channel_id: str) -> SecurityDecision:
        config = self.config
        if not config.enabled:
            return SecurityDecision(True, "Security disabled")
        if user_id in config.admin_users:
            return SecurityDecision(True, "Admin user access")

        user_ok = user_id in config.allowed_users
        channel_ok = channel_id in config.allowed_channels

        if config.strict_mode:
            if user_ok and channel_ok:
                return SecurityDecision(True, "User and channel both whitelisted (strict mode)")
            if not user_ok and not channel_ok:
                return SecurityDecision(False, "User and channel not whitelisted (strict mode)")
            if not user_ok:
                return SecurityDecision(False, "User not whitelisted (strict mode)")
            return SecurityDecision(False, "Channel not whitelisted (strict mode)")

        if user_ok and channel_ok:
            return SecurityDecision(True, "User and channel both whitelisted")
        if user_ok:
            return SecurityDecision(True, "User whitelisted")
        if channel_ok:
            return SecurityDecision(True, "Channel whitelisted")
        return SecurityDecision(False, "Neither user nor channel whitelisted")

    def _log(self, user_id: str, channel_id: str, decision: SecurityDecision) -> None:
        if not self.config.enabled:
            return
        if decision.allowed:
            logger.debug("Access granted: user=%s channel=%s reason=%s", user_id, channel_id, decision.reason)
        elif self.config.log_unauthorized:
            logger.warning("Access denied: user=%s channel=%s reason=%s", user_id, channel_id, decision.reason)
