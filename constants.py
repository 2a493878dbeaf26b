import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Relay
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", 30))
OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 64))
CLOSE_CODE_BACKPRESSURE = 1013  # "Try Again Later"

# Client
RELAY_URL = os.getenv("RELAY_URL", "ws://localhost:8080/ws")
RECONNECT_BASE_DELAY = float(os.getenv("RECONNECT_BASE_DELAY", 1.0))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", 10.0))
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", 5))
NEGOTIATION_TIMEOUT = float(os.getenv("NEGOTIATION_TIMEOUT", 20))
REANNOUNCE_DELAY = float(os.getenv("REANNOUNCE_DELAY", 1.0))
OFFER_DELAY = float(os.getenv("OFFER_DELAY", 0.5))

STUN_SERVERS = [
    url.strip()
    for url in os.getenv(
        "STUN_SERVERS",
        "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302,"
        "stun:stun2.l.google.com:19302,stun:stun3.l.google.com:19302",
    ).split(",")
    if url.strip()
]
