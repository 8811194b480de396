from ccrelay.stream.decoder import StreamDecoder

__all__ = ["StreamDecoder"]
