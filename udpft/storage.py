import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Union


PathLike = Union[str, "os.PathLike[str]"]


# Appends a seconds-resolution timestamp to the file stem: report_20240101_120000.txt
def versioned_name(filename: str, moment: datetime) -> str:
    path = Path(filename)
    return f"{path.stem}_{moment.strftime('%Y%m%d_%H%M%S')}{path.suffix}"


class FileStore:
    """Server-side storage root plus the backup directory for finished uploads.

    Names coming off the wire are reduced to their last path component, so a
    request can never reach outside the storage root.
    """

    def __init__(self, root: PathLike, backup_root: PathLike, clock: Callable[[], datetime] = datetime.now):
        self.root = Path(root)
        self.backup_root = Path(backup_root)
        self.clock = clock

    def ensure_directories(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.backup_root.mkdir(parents=True, exist_ok=True)

    def resolve(self, name: str) -> Path:
        safe_name = os.path.basename(name.replace("\\", "/"))
        if safe_name in ("", ".", ".."):
            raise ValueError(f"Invalid filename: {name!r}")
        return self.root / safe_name

    def open_for_read(self, name: str) -> BinaryIO:
        return open(self.resolve(name), "rb")

    def open_for_write(self, name: str) -> BinaryIO:
        return open(self.resolve(name), "wb")

    def remove(self, name: str) -> None:
        os.remove(self.resolve(name))

    # Copies a finished upload into the backup root under a versioned name
    def backup(self, name: str) -> Path:
        source = self.resolve(name)
        target = self.backup_root / versioned_name(source.name, self.clock())
        shutil.copy2(source, target)
        return target
