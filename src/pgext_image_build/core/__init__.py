from .config import DEFAULT_PIPELINE, Settings, load_settings
from .errors import (
    BuildError,
    BuildPipelineError,
    CommandFailedError,
    ContractOverlapError,
    ContractUnsatisfiedError,
    InvalidParameterError,
    MetadataError,
    PipelineDefinitionError,
    SetupError,
    SourceFetchError,
    StageCancelled,
    StageError,
    UnresolvedParameterError,
    stage_error_from_exc,
)
from .fs import (
    atomic_dir_commit,
    atomic_dir_swap,
    atomic_write_bytes,
    atomic_write_text,
    copy_or_hardlink,
    ensure_parent,
    make_tmp_dir_for,
    relpath_posix,
    remove_tree,
    seed_tree,
)
from .hashing import FileDigest, fingerprint, sha256_bytes, sha256_file, write_sha256_sum_txt
from .json import atomic_write_json, read_json, stable_json_dumps
from .logging import ILogger, bind, clear_bindings, configure_logging, get_logger
from .paths import WorkLayout
from .process import CommandResult, run_command, run_shell
from .provenance import RunProvenance, new_run_id
from .time import monotonic_ms, utc_now_iso, utc_stamp

__all__ = [
    "DEFAULT_PIPELINE",
    "Settings",
    "load_settings",
    "BuildError",
    "BuildPipelineError",
    "CommandFailedError",
    "ContractOverlapError",
    "ContractUnsatisfiedError",
    "InvalidParameterError",
    "MetadataError",
    "PipelineDefinitionError",
    "SetupError",
    "SourceFetchError",
    "StageCancelled",
    "StageError",
    "UnresolvedParameterError",
    "stage_error_from_exc",
    "atomic_dir_commit",
    "atomic_dir_swap",
    "atomic_write_bytes",
    "atomic_write_text",
    "copy_or_hardlink",
    "ensure_parent",
    "make_tmp_dir_for",
    "relpath_posix",
    "remove_tree",
    "seed_tree",
    "FileDigest",
    "fingerprint",
    "sha256_bytes",
    "sha256_file",
    "write_sha256_sum_txt",
    "atomic_write_json",
    "read_json",
    "stable_json_dumps",
    "ILogger",
    "bind",
    "clear_bindings",
    "configure_logging",
    "get_logger",
    "WorkLayout",
    "CommandResult",
    "run_command",
    "run_shell",
    "RunProvenance",
    "new_run_id",
    "monotonic_ms",
    "utc_now_iso",
    "utc_stamp",
]
