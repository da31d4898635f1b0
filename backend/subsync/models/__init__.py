"""Models for the application."""

from .user_billing import UserBilling
