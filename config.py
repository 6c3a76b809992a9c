import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "helpdesk")

# LLM Provider (Groq, OpenAI, or Ollama)
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").lower()  # "groq", "openai", or "ollama"

GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Ollama (local LLM server, OpenAI-compatible endpoint under /v1)
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen2.5:7b")

# AI generation
AI_TIMEOUT_SECONDS = int(os.getenv("AI_TIMEOUT_SECONDS", "30"))
AI_TEMPERATURE = float(os.getenv("AI_TEMPERATURE", "0.9"))  # high for variety between recipients
AI_MAX_TOKENS = int(os.getenv("AI_MAX_TOKENS", "500"))

# Chat channel gateway
CHANNEL_API_URL = os.getenv("CHANNEL_API_URL", "")
CHANNEL_API_TOKEN = os.getenv("CHANNEL_API_TOKEN", "")
CHANNEL_STATUS_URL = os.getenv("CHANNEL_STATUS_URL", "")  # empty = assume always ready
CHANNEL_TIMEOUT_SECONDS = int(os.getenv("CHANNEL_TIMEOUT_SECONDS", "30"))

# Pacing between sends (seconds), campaign defaults
DEFAULT_MIN_INTERVAL_SECONDS = int(os.getenv("DEFAULT_MIN_INTERVAL_SECONDS", "120"))
DEFAULT_MAX_INTERVAL_SECONDS = int(os.getenv("DEFAULT_MAX_INTERVAL_SECONDS", "180"))

# Sending hours in the target timezone
ENFORCE_SENDING_HOURS = os.getenv("ENFORCE_SENDING_HOURS", "true").lower() == "true"
TARGET_TIMEZONE = os.getenv("TARGET_TIMEZONE", "Asia/Jakarta")
SENDING_HOUR_START = int(os.getenv("SENDING_HOUR_START", "7"))
SENDING_HOUR_END = int(os.getenv("SENDING_HOUR_END", "21"))

# Pacer idle poll when there is nothing approved to send
PACER_IDLE_SECONDS = int(os.getenv("PACER_IDLE_SECONDS", "10"))

# Generation
GENERATION_BATCH_SIZE = int(os.getenv("GENERATION_BATCH_SIZE", "5"))
QUEUE_BUFFER_SIZE = int(os.getenv("QUEUE_BUFFER_SIZE", "5"))  # reviewable messages kept ahead of the pacer
GENERATION_INTERVAL_SECONDS = int(os.getenv("GENERATION_INTERVAL_SECONDS", "600"))
GENERATION_LEASE_TTL_SECONDS = int(os.getenv("GENERATION_LEASE_TTL_SECONDS", "900"))
DUPLICATE_SIMILARITY_THRESHOLD = float(os.getenv("DUPLICATE_SIMILARITY_THRESHOLD", "0.7"))
DUPLICATE_MAX_RETRIES = int(os.getenv("DUPLICATE_MAX_RETRIES", "3"))

# Engine loops
SUPERVISOR_INTERVAL_SECONDS = int(os.getenv("SUPERVISOR_INTERVAL_SECONDS", "15"))
RECONCILE_INTERVAL_SECONDS = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "300"))
HEARTBEAT_INTERVAL_SECONDS = int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300"))
CANCEL_WAIT_SECONDS = int(os.getenv("CANCEL_WAIT_SECONDS", "60"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
