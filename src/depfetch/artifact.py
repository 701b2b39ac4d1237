"""On-disk artifact format.

An artifact is an uncompressed tar archive named ``<full_name>.pkg`` that
holds:

- ``metadata.yaml``: the package specification
- ``data.tar.gz``: the package file tree (``bin/``, ``lib/``, ...)
- ``checksums.yaml`` (optional): SHA-256 digests of the two members above

Metadata read from an artifact is authoritative; registries sometimes report
metadata that does not match what they serve.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import tarfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Mapping, Optional, Union

import yaml

from depfetch.constants import Constants, TrustPolicies
from depfetch.errors import ArtifactError, UntrustedArtifact
from depfetch.models import Specification
from depfetch.settings import validate_trust_policy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrustPolicy:
    """Checks applied to an artifact before it is used."""

    verify_checksums: bool
    require_checksums: bool
    only_regular_files: bool = False


TRUST_POLICIES: Dict[str, TrustPolicy] = {
    TrustPolicies.NO_SECURITY.value: TrustPolicy(False, False),
    TrustPolicies.LOW_SECURITY.value: TrustPolicy(True, False),
    TrustPolicies.MEDIUM_SECURITY.value: TrustPolicy(True, True),
    TrustPolicies.HIGH_SECURITY.value: TrustPolicy(True, True, only_regular_files=True),
}


def trust_policy(name: Optional[str]) -> Optional[TrustPolicy]:
    if name is None:
        return None
    return TRUST_POLICIES[validate_trust_policy(name)]


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def build_artifact(
    spec: Specification,
    files: Mapping[str, Union[str, bytes]],
    directory: os.PathLike,
    checksums: bool = True,
) -> Path:
    """Write ``spec`` and ``files`` as an artifact into ``directory``.

    Files under ``bin/`` are stored executable.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    metadata = yaml.safe_dump(spec.to_dict(), sort_keys=True).encode("utf-8")

    data_buffer = io.BytesIO()
    with tarfile.open(fileobj=data_buffer, mode="w:gz") as data_tar:
        for name, content in sorted(files.items()):
            raw = content.encode("utf-8") if isinstance(content, str) else bytes(content)
            mode = 0o755 if name.startswith(Constants.BIN_DIR + "/") else 0o644
            _add_bytes(data_tar, name, raw, mode)
    data = data_buffer.getvalue()

    path = directory / spec.file_name
    with tarfile.open(path, mode="w") as tar:
        _add_bytes(tar, Constants.METADATA_MEMBER, metadata)
        _add_bytes(tar, Constants.DATA_MEMBER, data)
        if checksums:
            digests = {
                Constants.METADATA_MEMBER: _sha256(metadata),
                Constants.DATA_MEMBER: _sha256(data),
            }
            _add_bytes(tar, Constants.CHECKSUMS_MEMBER, yaml.safe_dump(digests).encode("utf-8"))
    return path


def _read_members(path: Path) -> Dict[str, bytes]:
    members: Dict[str, bytes] = {}
    try:
        with tarfile.open(path, mode="r:") as tar:
            for member in tar.getmembers():
                if member.name in (Constants.METADATA_MEMBER, Constants.DATA_MEMBER,
                                   Constants.CHECKSUMS_MEMBER) and member.isfile():
                    fh = tar.extractfile(member)
                    if fh is not None:
                        members[member.name] = fh.read()
    except (OSError, tarfile.TarError) as exc:
        raise ArtifactError(f"Could not read artifact {path.name}: {exc}") from exc
    if Constants.METADATA_MEMBER not in members:
        raise ArtifactError(f"Artifact {path.name} has no {Constants.METADATA_MEMBER}")
    return members


def _verify(path: Path, members: Dict[str, bytes], policy: Optional[TrustPolicy]) -> None:
    if policy is None or not policy.verify_checksums:
        return
    raw = members.get(Constants.CHECKSUMS_MEMBER)
    if raw is None:
        if policy.require_checksums:
            raise UntrustedArtifact(f"Artifact {path.name} carries no checksums")
        return
    try:
        digests = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise UntrustedArtifact(f"Artifact {path.name} has unreadable checksums: {exc}") from exc
    if not isinstance(digests, dict):
        raise UntrustedArtifact(f"Artifact {path.name} has unreadable checksums")
    for name in (Constants.METADATA_MEMBER, Constants.DATA_MEMBER):
        if name not in members:
            continue
        expected = digests.get(name)
        if expected is None:
            if policy.require_checksums:
                raise UntrustedArtifact(f"Artifact {path.name} carries no checksum for {name}")
            continue
        if _sha256(members[name]) != expected:
            raise UntrustedArtifact(f"Checksum mismatch for {name} in {path.name}")


def _parse_metadata(path: Path, raw: bytes) -> Specification:
    try:
        data = yaml.safe_load(raw)
        return Specification.from_dict(data)
    except (yaml.YAMLError, ValueError) as exc:
        raise ArtifactError(f"Invalid metadata in {path.name}: {exc}") from exc


def read_specification(path: os.PathLike, trust_policy_name: Optional[str] = None) -> Specification:
    """Read the specification embedded in an artifact.

    Raises:
        ArtifactError: the file is not a readable artifact.
        UntrustedArtifact: the artifact fails the trust policy.
    """
    path = Path(path)
    members = _read_members(path)
    _verify(path, members, trust_policy(trust_policy_name))
    spec = _parse_metadata(path, members[Constants.METADATA_MEMBER])
    spec.loaded_from = str(path)
    return spec


def _safe_member_name(name: str) -> bool:
    pure = PurePosixPath(name)
    return not pure.is_absolute() and ".." not in pure.parts and name.strip() != ""


def extract_artifact(
    path: os.PathLike,
    dest: os.PathLike,
    trust_policy_name: Optional[str] = None,
) -> Specification:
    """Unpack the data tree of an artifact into ``dest`` and return its specification."""
    path = Path(path)
    dest = Path(dest)
    members = _read_members(path)
    policy = trust_policy(trust_policy_name)
    _verify(path, members, policy)
    spec = _parse_metadata(path, members[Constants.METADATA_MEMBER])
    data = members.get(Constants.DATA_MEMBER)
    dest.mkdir(parents=True, exist_ok=True)
    if data is None:
        return spec
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            safe = []
            for member in tar.getmembers():
                if not _safe_member_name(member.name):
                    raise UntrustedArtifact(f"Unsafe path {member.name!r} in {path.name}")
                if member.issym() or member.islnk():
                    if policy is not None and policy.only_regular_files:
                        raise UntrustedArtifact(f"Link {member.name!r} not allowed in {path.name}")
                    logger.warning("Skipping link %s in %s", member.name, path.name)
                    continue
                if not (member.isfile() or member.isdir()):
                    if policy is not None and policy.only_regular_files:
                        raise UntrustedArtifact(f"Special file {member.name!r} not allowed in {path.name}")
                    continue
                safe.append(member)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, members=safe, filter="data")
            else:
                # Interpreters without extraction filters; members were vetted above.
                tar.extractall(dest, members=safe)
    except (OSError, tarfile.TarError) as exc:
        if isinstance(exc, PermissionError):
            raise
        raise ArtifactError(f"Could not unpack {path.name}: {exc}") from exc
    return spec
