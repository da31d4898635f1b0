"""CRUD operations for the application."""

from .crud_user_billing import user_billing
