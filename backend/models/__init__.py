"""SQLAlchemy models: re-export all."""

from models.user import User  # noqa: F401
from models.conversation import Conversation, Message, MessageRole  # noqa: F401
