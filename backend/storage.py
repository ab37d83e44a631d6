"""
Media storage for generated audio.

The video provider downloads the voiceover over HTTP, so audio is written to
TEMP_DIR and served back by the ``/media/{filename}`` route under
PUBLIC_BASE_URL. cleanup.py removes the files once they are stale.
"""

import asyncio
from pathlib import Path


class MediaStorage:
    def __init__(self, directory: str, public_base_url: str) -> None:
        self.directory = Path(directory)
        self.public_base_url = public_base_url.rstrip("/")

    def path_for(self, filename: str) -> Path:
        # Prevent path traversal attacks
        return self.directory / Path(filename).name

    def url_for(self, filename: str) -> str:
        return f"{self.public_base_url}/media/{Path(filename).name}"

    async def save(self, filename: str, data: bytes) -> str:
        """Write *data* under *filename* and return its public URL."""
        path = self.path_for(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        return self.url_for(filename)
