from enum import IntEnum

from websockets.frames import Opcode


class MessageType(IntEnum):
    """Classification of a complete WebSocket data message"""
    TEXT = 0x01
    BINARY = 0x02

    @classmethod
    def from_opcode(cls, opcode: Opcode) -> "MessageType":
        if opcode is Opcode.TEXT:
            return cls.TEXT
        if opcode is Opcode.BINARY:
            return cls.BINARY
        raise ValueError(f"{opcode.name} does not start a data message")
