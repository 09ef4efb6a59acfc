from .protocol import (
    HEADER_LEN,
    PROTOCOL_VERSION,
    ImdMessage,
    EnergyBlock,
    encode_header,
    decode_header,
)
from .sockets import ConnectionState, ImdServer

__all__ = [
    "HEADER_LEN",
    "PROTOCOL_VERSION",
    "ImdMessage",
    "EnergyBlock",
    "encode_header",
    "decode_header",
    "ConnectionState",
    "ImdServer",
]
