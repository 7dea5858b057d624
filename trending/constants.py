"""
Constants and configuration values for the embedding & clustering pipeline.
"""

# Embeddings
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536
EMBEDDING_API_BASE = "https://api.openai.com/v1"
EMBEDDING_REQUEST_CHUNK = 25  # Inputs per /embeddings request
EMBEDDING_UNAVAILABLE_REASON = "Embedding service unavailable"

# Queue
MAX_BATCH_SIZE = 100  # Hard ceiling per drain, regardless of caller request
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_MS = (1000, 2000, 4000)  # Indexed by attempt_count - 1
STALE_CLAIM_TIMEOUT_SECONDS = 600  # processing items older than this are reclaimable
SCHEDULED_EMBEDDING_BATCH = 50

# Clustering Trigger
TRIGGER_MAX_STALENESS_HOURS = 24.0
TRIGGER_MIN_INTERVAL_HOURS = 4.0
TRIGGER_MIN_NEW_ARTICLES = 10
TRIGGER_NEW_ARTICLE_WINDOW_HOURS = 4.0

# Cluster Formation
CLUSTER_LOOKBACK_HOURS = 168  # 7 days
CLUSTER_SIMILARITY_THRESHOLD = 0.75
CLUSTER_MIN_ARTICLES = 2
CLUSTER_MIN_SOURCES = 2
CLUSTER_KEYWORD_OVERLAP_MIN = 0  # 0 disables the keyword validation layer
CLUSTER_TIME_WINDOW_HOURS = 48.0
CLUSTER_TTL_HOURS = 48
CLUSTER_MAX_MEMBERS = 25
CLUSTER_AGGLOMERATIVE_LINKAGE = "complete"
CLUSTER_AGGLOMERATIVE_METRIC = "cosine"
TEXT_CLUSTER_MAX_ARTICLES = 60  # Articles sent to the LLM in text mode

# Similar Articles
SIMILAR_ARTICLES_THRESHOLD = 0.7
MAX_SIMILAR_ARTICLES = 5

# Labels
LABEL_FALLBACK_TOPIC = "Trending Topic"
LABEL_FALLBACK_SUMMARY = "Multiple sources covering this story."
LABEL_TOPIC_MAX_CHARS = 100
LABEL_SUMMARY_MAX_CHARS = 200
LABEL_SAMPLE_ARTICLES = 10
LABEL_EXCERPT_MAX_CHARS = 150

# LLM Configuration
LLM_API_BASE = "https://api.groq.com/openai/v1"
LLM_CLUSTER_MODEL = "llama-3.1-8b-instant"
LLM_TEMPERATURE = 0.2
LLM_LABEL_MAX_TOKENS = 200
LLM_GROUPING_MAX_TOKENS = 2000
LLM_MAX_RETRIES = 3

# Rate Limiting
RATE_LIMIT_ERROR_BACKOFF_BASE = 1.0
RATE_LIMIT_ERROR_BACKOFF_MAX = 30.0
LLM_429_COOLDOWN_BASE = 2.0
LLM_429_COOLDOWN_MAX = 60.0
LLM_MIN_REQUEST_INTERVAL = 1.0  # Minimum seconds between LLM requests
EMBEDDING_REQUESTS_PER_MINUTE = 500
HTTP_CONNECT_TIMEOUT = 10.0
HTTP_READ_TIMEOUT = 30.0
HTTP_WRITE_TIMEOUT = 10.0
HTTP_POOL_TIMEOUT = 5.0
HTTP_USER_AGENT = "trending-pipeline/1.0"

# Scheduler
SCHEDULER_MAX_ERRORS = 10
