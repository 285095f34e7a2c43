"""
difychat
A terminal client for Dify apps: sign in to Dify Cloud or a self-hosted
instance, keep the session fresh, and chat with your apps.

CLI Usage:
    python -m difychat <command> [options]

    Commands:
        login           Sign in through a browser window
        status          Show the current session
        logout          Clear the stored session
        apps            List cached apps
        add-app         Add an app by API key
        chat            Send a message to an app
        conversations   List an app's conversations
"""

from .auth import AuthGate, JSONFileStore, MemoryStore, SessionManager
from .apps import AppRepository, StoredApp
from .client import ChatReply, DifyAppClient, PromptVariable
from .conversations import Conversation, ConversationMirror
from .errors import DifyAPIError, DifyChatError, LoginError, StoreError
from .run_config import ClientConfig

__all__ = [
    'AuthGate',
    'JSONFileStore',
    'MemoryStore',
    'SessionManager',
    'AppRepository',
    'StoredApp',
    'ChatReply',
    'DifyAppClient',
    'PromptVariable',
    'Conversation',
    'ConversationMirror',
    'DifyAPIError',
    'DifyChatError',
    'LoginError',
    'StoreError',
    'ClientConfig',
]

__version__ = '0.1.0'
