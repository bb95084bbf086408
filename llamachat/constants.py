# llamachat/constants.py

APP_NAME = "llamachat"
__version__ = "0.3.0"
DEFAULT_OLLAMA = "http://127.0.0.1:11434"
DEFAULT_LOG_FILENAME = "app.log"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_LOG_BACKUP_COUNT = 5
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_IDLE_TIMEOUT = 120.0  # seconds between received chunks
CHATS_FILENAME = "chats.json"
