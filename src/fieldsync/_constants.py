"""Internal constants shared across the library."""

# Remote collections
BASE_COLLECTION = "voters"
SURVEY_COLLECTION = "voter_surveys"
DYNAMIC_COLLECTION = "voters_dynamic"

# Local tables
TABLE_BASE = "base"
TABLE_SURVEY = "overlay_survey"
TABLE_DYNAMIC = "overlay_dynamic"

# ------------------------------------------------------------------
# Batching
# ------------------------------------------------------------------

#: Default replay batch size.
MAX_BATCH_SIZE = 200
#: Hard ceiling on the remote store's atomic batch.
REMOTE_BATCH_LIMIT = 500
#: Default bulk import chunk size.
IMPORT_CHUNK_SIZE = 2000

DEFAULT_SYNC_INTERVAL = 60.0
DEFAULT_DIRECT_WRITE_TIMEOUT = 5.0
DEFAULT_REQUEST_TIMEOUT = 15.0

# Field stamped on every replayed payload.
LAST_SYNCED_AT_FIELD = "lastSyncedAt"
# Per-field timestamps carried by dynamic overlay payloads.
FIELD_UPDATED_AT_FIELD = "fieldUpdatedAt"
UPDATED_AT_FIELD = "updatedAt"

# Substrings that mark a remote error as quota/resource exhaustion.
QUOTA_ERROR_MARKERS: tuple[str, ...] = ("resource-exhausted", "resource_exhausted", "quota", "exceeded")

IMPORT_MARKER_KEY = "base_import"
