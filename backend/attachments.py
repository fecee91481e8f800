"""Best-effort removal of stored attachment files."""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

import config
import models

logger = logging.getLogger(__name__)


def stored_filenames(attachments: Iterable[models.TaskAttachment]) -> List[str]:
    """
    Capture stored file names before the rows are deleted.

    Attachment rows are expired once the deleting transaction commits, so
    callers collect the names up front and remove files afterwards.
    """
    return [attachment.filename for attachment in attachments]


def delete_attachment_files(filenames: Iterable[str], upload_dir: Optional[Path] = None) -> int:
    """
    Remove attachment files from disk.

    Failures are logged and never raised: the database rows are already gone
    and a leftover file must not turn a committed delete into an error.

    Returns:
        Number of files actually removed
    """
    base = Path(upload_dir) if upload_dir is not None else config.UPLOAD_DIR
    base_resolved = base.resolve()
    removed = 0

    for filename in filenames:
        try:
            file_path = (base / filename).resolve()
            if base_resolved not in file_path.parents:
                logger.warning(f"⚠️  Refusing to delete file outside upload directory: {filename}")
                continue
            if file_path.exists():
                file_path.unlink()
                removed += 1
                logger.debug(f"Deleted file from disk: {file_path}")
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️  Failed to delete file from disk: {e}")

    logger.debug(f"Removed {removed} attachment file(s) from {base}")
    return removed
