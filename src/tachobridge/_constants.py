"""Internal constants shared across the library."""

import re

APP_NAME = "Tacho Bridge Application"
APP_DESCRIPTION = "Application for the tachograph cards authentication"

CONFIG_DIR_PARTS: tuple[str, ...] = ("Documents", "tba")
CONFIG_FILE_NAME = "config.json"

DEFAULT_BROKER_PORT = 8883
DEFAULT_KEEPALIVE_SECONDS = 550

CARD_NUMBER_RE = re.compile(r"^[A-Z0-9]{16}$")
APP_IDENT_RE = re.compile(r"^TBA\d{13}$")

# ------------------------------------------------------------------
# Broker topic layout (everything lives under tba/<appIdent>/)
# ------------------------------------------------------------------

TOPIC_ROOT = "tba"
TOPIC_STATUS = "status"
TOPIC_READERS = "readers"
TOPIC_CARDS = "cards"
TOPIC_COMMANDS = "commands"
TOPIC_AUTH = "auth"

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

# ------------------------------------------------------------------
# Tachograph card APDUs
# ------------------------------------------------------------------

# SELECT EF_ICC (file id 0002) by path, no response data.
APDU_SELECT_EF_ICC = bytes.fromhex("00A4020C020002")
# READ BINARY, 25 bytes of EF_ICC.
APDU_READ_EF_ICC = bytes.fromhex("00B0000019")
# cardExtendedSerialNumber lives right after the one-byte clockStop field.
EF_ICC_SERIAL_SLICE = slice(1, 9)

SW_SUCCESS = (0x90, 0x00)
