"""Concrete implementations for identifying the current user."""

from abc import ABC, abstractmethod
from typing import Optional

from .models import Participant, generate_id


class Auth(ABC):
    """Interface for identifying the current user."""

    @abstractmethod
    def get_current_user(self, **kwargs) -> Participant:
        """Determines and returns the current user."""
        pass


class SingleUser(Auth):
    """A simple auth manager for single-user apps."""

    def __init__(self, user_id: Optional[str] = None, name: str = "Guest"):
        """Initialize with a user identity.

        Parameters
        ----------
        user_id : str, optional
            User identifier. Non-string values are converted to strings; when
            omitted a random ``u-xxxxxx`` id is generated once per instance.
        name : str, default="Guest"
            Display name shown to other room participants.
        """
        self._user = Participant(
            id=str(user_id) if user_id is not None else generate_id("u"),
            name=name,
        )

    def get_current_user(self, **kwargs) -> Participant:
        return self._user
