"""
Provides methods for checking the integrity of written containers.
"""

import logging

from mutagen import MutagenError
from mutagen.mp4 import MP4, MP4StreamInfoError

log = logging.getLogger(__name__)


class FileIntegrityChecker:
    """A collection of static methods for validating container integrity."""

    @staticmethod
    def check_mp4(filepath: str) -> bool:
        """
        Performs a basic integrity check on an MP4/M4B file.

        Checks if the file can be opened by mutagen and has an audio track
        with a positive duration.

        Args:
            filepath: Path to the MP4 file.

        Returns:
            True if the file appears to be a valid MP4 file, False otherwise.
        """
        try:
            audio = MP4(filepath)
            if audio.info and audio.info.length > 0:
                return True
            log.warning(
                f"MP4 integrity check failed for '{filepath}': No valid stream info."
            )
            return False
        except MP4StreamInfoError:
            log.warning(
                f"MP4 integrity check failed for '{filepath}': No audio track found."
            )
            return False
        except (MutagenError, OSError) as e:
            log.debug(f"MP4 check failed for '{filepath}' with error: {e}")
            return False
