# Made by trex099
# https://github.com/Trex099/Glint
"""
Durable storage of VM records

One `<name>.conf` file per VM in the store directory, holding one
KEY="value" line per record key. Saves are atomic: the full record is
written to a temporary file in the same directory and renamed into place.
"""

import os
import re
import logging
import tempfile
from typing import Dict, List

from .core_utils import print_success
from .error_handling import NotFoundError, ValidationError, VMError, ErrorCategory
from .vm_record import VMRecord, RECORD_KEYS

logger = logging.getLogger(__name__)

CONF_SUFFIX = '.conf'
LINE_PATTERN = re.compile(r'^([A-Z_]+)="(.*)"$')
_ESCAPED = ('\\', '"', '$', '`')


def escape_value(value: str) -> str:
    """Backslash-escape characters that are special inside double quotes"""
    return ''.join('\\' + c if c in _ESCAPED else c for c in value)


def unescape_value(value: str) -> str:
    out = []
    chars = iter(value)
    for c in chars:
        if c == '\\':
            c = next(chars, '\\')
        out.append(c)
    return ''.join(out)


def serialize(record: VMRecord) -> str:
    """Render a record in the persisted text form."""
    lines = []
    for key, value in record.to_mapping().items():
        if '\n' in value or '\r' in value:
            raise ValidationError(f"Value of {key} cannot contain line breaks", kind='record', value=key)
        lines.append(f'{key}="{escape_value(value)}"')
    return '\n'.join(lines) + '\n'


def parse(text: str, source: str = '<text>') -> Dict[str, str]:
    """Parse the persisted text form into a KEY -> value mapping."""
    data = {}
    # Only \n ends a record line; other Unicode line separators may appear in values
    for lineno, line in enumerate(text.split('\n'), 1):
        line = line.rstrip('\r')
        if not line.strip() or line.lstrip().startswith('#'):
            continue
        match = LINE_PATTERN.match(line.strip())
        if not match:
            raise ValidationError(
                f"VM record {source} line {lineno} is malformed",
                kind='record', value=source,
                details=line
            )
        data[match.group(1)] = unescape_value(match.group(2))
    return data


class ConfigStore:
    """
    Reads and writes VM records under a single directory

    The store owns only the record files. Image and seed files are the
    caller's responsibility.
    """

    def __init__(self, vms_dir: str):
        self.vms_dir = os.path.abspath(vms_dir)

    def path_for(self, name: str) -> str:
        return os.path.join(self.vms_dir, f"{name}{CONF_SUFFIX}")

    def exists(self, name: str) -> bool:
        return os.path.isfile(self.path_for(name))

    def list(self) -> List[str]:
        """Names of all stored VMs, sorted lexicographically"""
        if not os.path.isdir(self.vms_dir):
            return []
        return sorted(
            entry[:-len(CONF_SUFFIX)]
            for entry in os.listdir(self.vms_dir)
            if entry.endswith(CONF_SUFFIX) and os.path.isfile(os.path.join(self.vms_dir, entry))
        )

    def load(self, name: str) -> VMRecord:
        """
        Load a record by VM name

        Every call parses the file afresh and builds a new record.

        Raises:
            NotFoundError: if no record exists for the name
            ValidationError: if the file is incomplete or malformed
        """
        path = self.path_for(name)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                text = f.read()
        except FileNotFoundError:
            raise NotFoundError(
                f"VM '{name}' does not exist",
                suggestions=["List VMs to see the available names"]
            ) from None

        data = parse(text, source=path)
        unknown = set(data) - set(RECORD_KEYS)
        if unknown:
            logger.warning(f"Ignoring unknown keys in {path}: {', '.join(sorted(unknown))}")
        record = VMRecord.from_mapping(data, source=path)
        if record.name != name:
            raise ValidationError(
                f"VM record {path} names '{record.name}', expected '{name}'",
                kind='record', value=path
            )
        return record

    def save(self, record: VMRecord) -> str:
        """
        Atomically write the full record, replacing any previous one

        Returns:
            Path of the record file
        """
        content = serialize(record)
        os.makedirs(self.vms_dir, exist_ok=True)
        path = self.path_for(record.name)

        fd, tmp_path = tempfile.mkstemp(prefix=f".{record.name}.", suffix='.tmp', dir=self.vms_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise VMError(
                f"Failed to save VM '{record.name}': {e}",
                code="CVM-E610",
                category=ErrorCategory.STORAGE,
                suggestions=["Check disk space and permissions on the VM directory"],
                original_exception=e
            ) from e

        logger.info(f"Saved configuration for VM '{record.name}' to {path}")
        print_success(f"Configuration saved for VM '{record.name}'")
        return path

    def delete(self, name: str) -> None:
        """Remove the record file only"""
        try:
            os.remove(self.path_for(name))
        except FileNotFoundError:
            raise NotFoundError(f"VM '{name}' does not exist") from None
        logger.info(f"Deleted configuration for VM '{name}'")
