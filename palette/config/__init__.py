from palette.config.config import Config

__all__ = ["Config"]
