"""Load a layout file (JSON or TOML) into a ``LayoutSpec``.

File shape (JSON shown; TOML uses the same keys with ``[[disks]]`` arrays)::

    {
      "name": "workstation",
      "disks": [
        {"id": "nvme0", "device": "/dev/nvme0n1", "role": "boot",
         "partitions": [
           {"name": "efi", "start": "1MiB", "end": "512MiB", "fs_hint": "fat32"}
         ]}
      ],
      "filesystems": [
        {"name": "efi", "kind": "fat32", "partitions": ["efi"], "label": "ODIN"}
      ],
      "mounts": [{"filesystem": "efi", "mount_point": "/mnt/efi"}]
    }

A partition may give ``size`` instead of ``end``; its ``index`` defaults to
its position in the disk's list. Loading only checks shape and types;
structural invariants are ``LayoutSpec.validate()``'s job.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from disk_provisioner.domain.models import (
    Disk,
    DiskRole,
    FilesystemKind,
    FilesystemSpec,
    LayoutSpec,
    MountSpec,
    Partition,
    end_from_size,
)
from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage.exceptions import InvalidLayout


log = LoggerFactory.for_layout()


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext == "toml":
        return "toml"
    # Default to JSON for unknown extensions.
    return "json"


def read_layout_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise InvalidLayout(f"layout file does not exist: {path}")
    try:
        if _detect_format(path) == "toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as error:
        raise InvalidLayout(f"cannot parse {path}: {error}") from error
    if not isinstance(data, dict):
        raise InvalidLayout(f"layout file must contain an object, got {type(data).__name__}")
    return data


def load_layout(path: Path | str) -> LayoutSpec:
    path = Path(path)
    layout = layout_from_dict(read_layout_file(path), default_name=path.stem)
    log.info(
        "Loaded layout {} from {}: {} disks, {} filesystems, {} mounts",
        layout.name,
        path,
        len(layout.disks),
        len(layout.filesystems),
        len(layout.mounts),
    )
    return layout


def layout_from_dict(data: dict[str, Any], default_name: str = "layout") -> LayoutSpec:
    disks: list[Disk] = []
    partitions: list[Partition] = []

    for entry in _list(data, "disks", "layout"):
        disk = _disk(entry)
        disks.append(disk)
        for position, part in enumerate(_list(entry, "partitions", f"disk {disk.id}"), start=1):
            partitions.append(_partition(part, disk, position))

    filesystems = [_filesystem(entry) for entry in _list(data, "filesystems", "layout")]
    mounts = [_mount(entry) for entry in _list(data, "mounts", "layout")]

    return LayoutSpec(
        disks=tuple(disks),
        partitions=tuple(partitions),
        filesystems=tuple(filesystems),
        mounts=tuple(mounts),
        name=str(data.get("name") or default_name),
    )


def _list(data: dict[str, Any], key: str, where: str) -> list[dict[str, Any]]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise InvalidLayout(f"{where}: {key!r} must be a list of objects")
    return value


def _required(entry: dict[str, Any], key: str, where: str) -> Any:
    if entry.get(key) in (None, ""):
        raise InvalidLayout(f"{where}: missing {key!r}")
    return entry[key]


def _optional_str(entry: dict[str, Any], key: str) -> str | None:
    value = entry.get(key)
    return None if value is None else str(value)


def _disk(entry: dict[str, Any]) -> Disk:
    disk_id = str(_required(entry, "id", "disk"))
    role = entry.get("role", DiskRole.DATA.value)
    try:
        role = DiskRole(role)
    except ValueError:
        raise InvalidLayout(f"disk {disk_id}: unknown role {role!r}") from None
    size = entry.get("size_bytes")
    if size is not None and not isinstance(size, int):
        raise InvalidLayout(f"disk {disk_id}: size_bytes must be an integer")
    return Disk(
        id=disk_id,
        device=str(_required(entry, "device", f"disk {disk_id}")),
        role=role,
        size_bytes=size,
        wipe=bool(entry.get("wipe", True)),
        table=str(entry.get("table", "gpt")),
    )


def _partition(entry: dict[str, Any], disk: Disk, position: int) -> Partition:
    name = str(_required(entry, "name", f"partition {position} of disk {disk.id}"))
    start = str(_required(entry, "start", f"partition {name}"))
    if "end" in entry and "size" in entry:
        raise InvalidLayout(f"partition {name}: give either 'end' or 'size', not both")
    if "size" in entry:
        end = end_from_size(start, str(entry["size"]), disk.size_bytes)
    else:
        end = str(_required(entry, "end", f"partition {name}"))
    index = entry.get("index", position)
    if not isinstance(index, int):
        raise InvalidLayout(f"partition {name}: index must be an integer")
    return Partition(
        name=name,
        disk=disk.id,
        index=index,
        start=start,
        end=end,
        fs_hint=_optional_str(entry, "fs_hint"),
    )


def _filesystem(entry: dict[str, Any]) -> FilesystemSpec:
    name = str(_required(entry, "name", "filesystem"))
    kind = _required(entry, "kind", f"filesystem {name}")
    try:
        kind = FilesystemKind(kind)
    except ValueError:
        raise InvalidLayout(f"filesystem {name}: unknown kind {kind!r}") from None
    members = entry.get("partitions", [])
    if isinstance(members, str):
        members = [members]
    if not isinstance(members, list):
        raise InvalidLayout(f"filesystem {name}: 'partitions' must be a list")
    return FilesystemSpec(
        name=name,
        kind=kind,
        partitions=tuple(str(m) for m in members),
        label=_optional_str(entry, "label"),
        uuid=_optional_str(entry, "uuid"),
        data_profile=_optional_str(entry, "data_profile"),
        metadata_profile=_optional_str(entry, "metadata_profile"),
        compression=_optional_str(entry, "compression"),
    )


def _mount(entry: dict[str, Any]) -> MountSpec:
    filesystem = str(_required(entry, "filesystem", "mount"))
    options = entry.get("options", [])
    if isinstance(options, str):
        options = [o for o in options.split(",") if o]
    if not isinstance(options, list):
        raise InvalidLayout(f"mount of {filesystem}: 'options' must be a list")
    return MountSpec(
        filesystem=filesystem,
        mount_point=_optional_str(entry, "mount_point"),
        options=tuple(str(o) for o in options),
    )
