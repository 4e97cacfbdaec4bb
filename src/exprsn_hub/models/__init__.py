"""SQLAlchemy models for the Exprsn hub."""

from .federation import FederationQueueItem
from .oauth import AccessToken, AuthorizationCode, OAuthClient, OAuthConsent, RefreshToken
from .rate_limit import RateLimitCounter
from .site import SiteConfigRecord
from .social import Follow, Like, Notification, Post, Repost
from .user import SubdomainRegistration, User

__all__ = [
    "FederationQueueItem",
    "AccessToken", "AuthorizationCode", "OAuthClient", "OAuthConsent", "RefreshToken",
    "RateLimitCounter",
    "SiteConfigRecord",
    "Follow", "Like", "Notification", "Post", "Repost",
    "SubdomainRegistration", "User",
]
