"""Application configuration settings.

Values can be overridden via environment variables.
"""
import os
import tempfile


class Settings:
    # Root of the stored upload tree.  Leave unset to disable upload handling.
    FILE_UPLOAD_PATH: str | None = os.getenv("FILE_UPLOAD_PATH") or None

    # Where incoming uploads wait until their row has been written
    UPLOAD_STAGING_DIR: str = os.getenv(
        "UPLOAD_STAGING_DIR", os.path.join(tempfile.gettempdir(), "fileupload-staging")
    )
    UPLOAD_CHUNK_SIZE: int = int(os.getenv("UPLOAD_CHUNK_SIZE", str(1024 * 1024)))


settings = Settings()
