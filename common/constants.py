"""Project-wide constants (record sizes, limits, backend defaults)."""

RECORD_SIZE: int = 64
MAX_CHUNK_DATA: int = 51  # 64 - magic(4) - cartridgeId(4) - chunkIndex(4) - len(1)
DEFAULT_CHUNK_SIZE: int = MAX_CHUNK_DATA
DEFAULT_SCHEMA: int = 1
MAX_TITLE_BYTES: int = 15
CARTRIDGE_REF_SIZE: int = 20

MAGIC_HEADER: bytes = b"CART"
MAGIC_CHUNK: bytes = b"DATA"
MAGIC_CATALOG_ENTRY: bytes = b"CENT"

FLAG_RETIRED: int = 0x01

MAX_CARTRIDGE_SIZE: int = 6 * 1024 * 1024

PLATFORM_NAMES = {
    0: "DOS",
    1: "GB",
    2: "GBC",
    3: "NES",
    4: "SNES",
}

# Pagination
DEFAULT_PAGE_SIZE: int = 500
CATALOG_MAX_PAGES: int = 100
STREAM_MAX_PAGES: int = 200
HEADER_SEARCH_PAGES: int = 5
STALL_PAGE_LIMIT: int = 3
PAGE_FETCH_RETRIES: int = 3

# Upload
DEFAULT_RATE_LIMIT: float = 25.0
DEFAULT_CONCURRENCY: int = 8
MAX_CONCURRENCY: int = 10
PROGRESS_SAVE_INTERVAL: int = 10

# Download
PROGRESS_BATCH_SIZE: int = 500
PROGRESS_MIN_INTERVAL_SECONDS: float = 0.1

# Cache
DEFAULT_CACHE_MAX_BYTES: int = 200 * 1024 * 1024

# Catalog shortcuts
CATALOG_ADDRESSES = {
    "main": "NQ15 NXMP 11A0 TMKP G1Q8 4ABD U16C XD6Q D948",
    "test": "NQ32 0VD4 26TR 1394 KXBJ 862C NFKG 61M5 GFJ0",
}

# Nimiq
NIMIQ_DEFAULT_RPC_URL: str = "http://127.0.0.1:8648"
NIMIQ_DEFAULT_FEE: int = 0
NIMIQ_TX_VALUE: int = 1

# Solana
SOLANA_DEFAULT_RPC_URL: str = "https://api.devnet.solana.com"
SOLANA_PROGRAM_ID: str = "iXBRbJjLtohupYmSDz3diKTVz2wU8NXe4gezFsSNcy1"
SOLANA_RECORD_DISCRIMINATOR: bytes = b"CSRECORD"
SOLANA_MAX_ACCOUNTS_PER_REQUEST: int = 100
SOLANA_PUBLIC_RATE_LIMIT: float = 4.0  # 40 requests per 10 seconds
SOLANA_PUBLIC_RATE_BURST: int = 40

# Sui / Walrus
SUI_DEFAULT_RPC_URL: str = "https://fullnode.testnet.sui.io:443"
WALRUS_DEFAULT_AGGREGATOR: str = "https://aggregator.walrus-testnet.walrus.space"
WALRUS_DEFAULT_PUBLISHER: str = "https://publisher.walrus-testnet.walrus.space"
WALRUS_DEFAULT_EPOCHS: int = 5
SUI_DYNAMIC_FIELD_PAGE_LIMIT: int = 50
