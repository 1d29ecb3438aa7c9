"""Shared constants for the tablet volume tooling."""

# Path layout below a volume root
TABLES_DIR = "tables"
INSTANCE_ID_DIR = "instance_id"
VERSION_DIR = "version"
DATA_VERSION = 6

# Metadata table columns (family, qualifier)
DIRECTORY_COLUMN = ("srv", "dir")
VOLUME_COLUMN = ("srv", "vol")

# Metadata row key separators
END_ROW_SEPARATOR = ";"
DEFAULT_TABLET_MARKER = "<"

# Volume schemes
SCHEME_FILE = "file"
SCHEME_S3 = "s3"
SUPPORTED_SCHEMES = (SCHEME_FILE, SCHEME_S3)

# Configuration properties
PROP_INSTANCE_VOLUMES = "volumes"
VOLUME_PROPERTY_SEPARATOR = ","

# Rebalance defaults
DEFAULT_WORKERS = 8
DEFAULT_BATCH_SIZE = 1000
DEFAULT_WRITE_RETRIES = 3
DEFAULT_RETRY_DELAY = 0.5
DEFAULT_MIN_VOLUMES = 2
STRATEGY_BALANCED = "balanced"
STRATEGY_UNIFORM = "uniform"
