"""Persistence for the billing module."""

from .user_store import UserStore, user_store

__all__ = ['UserStore', 'user_store']
