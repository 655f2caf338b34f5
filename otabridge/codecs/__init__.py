from otabridge.codecs.base import CodecError, DecodeError

__all__ = ["CodecError", "DecodeError"]
