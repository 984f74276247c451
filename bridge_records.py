"""
Transfer Records

A transfer record is one source commit packaged for replay: a binary-safe
patch plus a JSON metadata file sharing the same basename, e.g.

    .bridge-transfer/001_commit_1a2b3c4.patch
    .bridge-transfer/001_commit_1a2b3c4.json

The metadata carries an explicit `index`, so the replay order can be
recovered from the files alone without a manifest. Files written before
the index field existed are ordered by filename, which starts with the
zero-padded index.
"""

import json
from pathlib import Path

from bridge_git import BridgeError

# Directory at the root of the carrier commit holding the record files
TRANSFER_DIR = ".bridge-transfer"

# Middle component of every record filename
TRANSFER_FILE_PREFIX = "commit"

PATCH_SUFFIX = ".patch"
METADATA_SUFFIX = ".json"

SHORT_HASH_LENGTH = 7
INDEX_WIDTH = 3

# Metadata fields that must be present and non-empty
REQUIRED_FIELDS = ['sha', 'author_name', 'author_email', 'date_full', 'commit_subject']


def record_basename(index, commit_hash):
    """
    Build the shared basename of a record's patch and metadata files.

    Args:
        index: 1-based position in the batch
        commit_hash: Source commit hash

    Returns:
        str: Basename such as 001_commit_1a2b3c4
    """
    return f"{index:0{INDEX_WIDTH}d}_{TRANSFER_FILE_PREFIX}_{commit_hash[:SHORT_HASH_LENGTH]}"


def split_message(message):
    """
    Split a raw commit message into subject line and body.

    The body is everything after the first newline, byte for byte, so the
    separator line and trailing newlines survive the round trip.

    Args:
        message: Raw commit message

    Returns:
        tuple: (subject, body)
    """
    subject, _, body = message.partition('\n')
    return subject, body


def build_message(subject, body):
    """
    Rebuild the commit message from subject and body.

    Inverse of split_message() for every message that contains a newline.
    """
    return f"{subject}\n{body}"


def is_missing(value):
    """Metadata values that are absent, empty or a literal JSON-tool null."""
    return value is None or (isinstance(value, str) and value.strip() in ('', 'null'))


class CommitAttribution:
    """
    Author and committer identity for one commit.

    Handed explicitly to the commit-creation step so nothing has to be
    exported into the process environment between iterations. Missing
    committer fields fall back to the author values.
    """

    def __init__(self, author_name, author_email, author_date,
                 committer_name=None, committer_email=None, committer_date=None):
        self.author_name = author_name
        self.author_email = author_email
        self.author_date = author_date
        self.committer_name = author_name if is_missing(committer_name) else committer_name
        self.committer_email = author_email if is_missing(committer_email) else committer_email
        self.committer_date = author_date if is_missing(committer_date) else committer_date

    def as_environment(self):
        """
        Environment variables for a single `git commit` call.

        Returns:
            dict: GIT_AUTHOR_* and GIT_COMMITTER_* variables
        """
        return {
            'GIT_AUTHOR_NAME': self.author_name,
            'GIT_AUTHOR_EMAIL': self.author_email,
            'GIT_AUTHOR_DATE': self.author_date,
            'GIT_COMMITTER_NAME': self.committer_name,
            'GIT_COMMITTER_EMAIL': self.committer_email,
            'GIT_COMMITTER_DATE': self.committer_date,
        }


class TransferRecord:
    """One commit's patch and metadata, packaged for replay."""

    def __init__(self, index, sha, parent_sha, attribution, subject, body, patch=b'',
                 raw_message=None, encoding=None):
        self.index = index
        self.sha = sha
        self.parent_sha = parent_sha or ''
        self.attribution = attribution
        self.subject = subject
        self.body = body or ''
        self.patch = patch
        self.raw_message = raw_message
        self.encoding = encoding
        self.patch_path = None
        self.metadata_path = None

    @property
    def short_sha(self):
        return self.sha[:SHORT_HASH_LENGTH]

    @property
    def basename(self):
        return record_basename(self.index, self.sha)

    @property
    def is_root(self):
        return not self.parent_sha

    def message(self):
        # A single-line message without a trailing newline only survives in the raw copy
        if self.raw_message is not None:
            return self.raw_message
        return build_message(self.subject, self.body)

    def to_metadata(self):
        """
        Build the JSON metadata document for this record.

        Returns:
            dict: Metadata fields in file order
        """
        return {
            'index': self.index,
            'sha': self.sha,
            'parent_sha': self.parent_sha,
            'author_name': self.attribution.author_name,
            'author_email': self.attribution.author_email,
            'date_full': self.attribution.author_date,
            'committer_name': self.attribution.committer_name,
            'committer_email': self.attribution.committer_email,
            'committer_date': self.attribution.committer_date,
            'commit_subject': self.subject,
            'commit_body': self.body,
            'commit_message': self.message(),
            'commit_encoding': self.encoding,
        }

    @classmethod
    def from_metadata(cls, metadata, index, patch=b''):
        """
        Build a record from parsed metadata.

        Args:
            metadata: Parsed JSON document
            index: Position to assign
            patch: Patch bytes

        Returns:
            TransferRecord: The record
        """
        attribution = CommitAttribution(
            metadata['author_name'],
            metadata['author_email'],
            metadata['date_full'],
            metadata.get('committer_name'),
            metadata.get('committer_email'),
            metadata.get('committer_date'),
        )
        parent_sha = metadata.get('parent_sha')
        if is_missing(parent_sha):
            parent_sha = ''
        body = metadata.get('commit_body')
        raw_message = metadata.get('commit_message')
        encoding = metadata.get('commit_encoding')
        return cls(index, metadata['sha'], parent_sha, attribution,
                   metadata['commit_subject'], body if isinstance(body, str) else '',
                   patch,
                   raw_message=raw_message if isinstance(raw_message, str) else None,
                   encoding=None if is_missing(encoding) else encoding)


def write_record(directory, record):
    """
    Write a record's patch and metadata files into a directory.

    Args:
        directory: Target directory (created if needed)
        record: TransferRecord to write

    Returns:
        tuple: (patch_path, metadata_path)
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    patch_path = directory / f"{record.basename}{PATCH_SUFFIX}"
    metadata_path = directory / f"{record.basename}{METADATA_SUFFIX}"

    patch_path.write_bytes(record.patch)
    with open(metadata_path, 'w', encoding='utf-8') as f:
        json.dump(record.to_metadata(), f, indent=2, ensure_ascii=False)
        f.write('\n')

    record.patch_path = patch_path
    record.metadata_path = metadata_path
    return patch_path, metadata_path


def _read_metadata(metadata_path, problems):
    try:
        with open(metadata_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
    except (OSError, ValueError) as e:
        problems.append(f"{metadata_path.name}: not valid JSON ({e})")
        return None

    if not isinstance(metadata, dict):
        problems.append(f"{metadata_path.name}: expected a JSON object")
        return None

    missing = [field for field in REQUIRED_FIELDS if is_missing(metadata.get(field))]
    if missing:
        problems.append(f"{metadata_path.name}: missing or empty field(s): {', '.join(missing)}")
        return None

    return metadata


def load_batch(directory):
    """
    Load and validate every transfer record in a directory.

    Checks that each patch has its metadata and vice versa, that the
    metadata is well formed, and that the indices run 1..N without gaps.

    Args:
        directory: Directory holding the record files

    Returns:
        list: TransferRecord objects in replay order

    Raises:
        BridgeError: If the batch is empty or invalid
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise BridgeError(f"Transfer directory not found: {directory}")

    patches = {p.stem: p for p in directory.iterdir() if p.is_file() and p.suffix == PATCH_SUFFIX}
    metadata_files = {p.stem: p for p in directory.iterdir() if p.is_file() and p.suffix == METADATA_SUFFIX}

    if not patches and not metadata_files:
        raise BridgeError(f"No transfer records found in {directory}")

    problems = []
    for stem in sorted(set(patches) - set(metadata_files)):
        problems.append(f"{stem}{PATCH_SUFFIX}: missing metadata file {stem}{METADATA_SUFFIX}")
    for stem in sorted(set(metadata_files) - set(patches)):
        problems.append(f"{stem}{METADATA_SUFFIX}: missing patch file {stem}{PATCH_SUFFIX}")

    loaded = []
    for stem in sorted(set(patches) & set(metadata_files)):
        metadata = _read_metadata(metadata_files[stem], problems)
        if metadata is not None:
            loaded.append((stem, metadata))

    if problems:
        raise BridgeError("Invalid transfer batch:\n  " + "\n  ".join(problems))

    explicit = [m.get('index') for _, m in loaded]
    if all(isinstance(i, int) and not isinstance(i, bool) for i in explicit):
        ordered = sorted(zip(explicit, loaded), key=lambda item: item[0])
    elif all(i is None for i in explicit):
        # Older format: filename order is index order
        ordered = list(enumerate(loaded, 1))
    else:
        raise BridgeError("Invalid transfer batch: some records carry an index and some do not")

    indices = [index for index, _ in ordered]
    if indices != list(range(1, len(indices) + 1)):
        raise BridgeError(
            "Invalid transfer batch: indices must run from 1 without gaps or duplicates "
            f"(found {', '.join(str(i) for i in indices)})"
        )

    records = []
    for index, (stem, metadata) in ordered:
        record = TransferRecord.from_metadata(metadata, index, patches[stem].read_bytes())
        record.patch_path = patches[stem]
        record.metadata_path = metadata_files[stem]
        records.append(record)

    return records
