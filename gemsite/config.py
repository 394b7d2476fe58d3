import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

# Network
HOST = ""        # listen on v4+v6 when possible (AF_INET6 + dual-stack)
PORT = 1965

# Directories
BASE_DIR = "public"
CERT_DIR = "certs"

# TLS
SERV_CERT = os.path.join(CERT_DIR, "server.pem")
SERV_KEY  = os.path.join(CERT_DIR, "server.key")
HOSTNAME  = "localhost"
CERT_DAYS = 3650

# I/O
READ_BYTES      = 1024
MAX_REQUEST     = 1024   # request line ceiling, CRLF included
TIMEOUT_S       = 5      # handshake + request line
WRITE_TIMEOUT_S = 60

# Sessions
MAX_SESSIONS    = 32
QUEUE_TIMEOUT_S = 1.0

# Content
INDEX_FILES = ("index.gmi", "index.html")


@dataclass(frozen=True)
class Redirect:
    target: str
    permanent: bool = False


@dataclass(frozen=True)
class ServerConfig:
    root: str = BASE_DIR
    host: str = HOST
    port: int = PORT
    cert_file: str = SERV_CERT
    key_file: str = SERV_KEY
    hostname: str = HOSTNAME
    cert_days: int = CERT_DAYS
    # When non-empty, requests for any other host are refused.
    hostnames: Tuple[str, ...] = ()
    index_files: Tuple[str, ...] = INDEX_FILES
    directory_listing: bool = True
    # Path prefixes that need a client certificate.
    cert_required: Tuple[str, ...] = ()
    redirects: Dict[str, Redirect] = field(default_factory=dict)
    read_timeout: float = TIMEOUT_S
    write_timeout: Optional[float] = WRITE_TIMEOUT_S
    max_sessions: int = MAX_SESSIONS
    queue_timeout: float = QUEUE_TIMEOUT_S
