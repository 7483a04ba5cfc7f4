DEFAULT_ENV = "dev"
LOG_LEVEL_ENV_VAR = "LOG_LEVEL"

# Naming convention components
SERVICE_NAME = "fake-twitter"  # The application name
TOPOLOGY_LOGGER_SERVICE = "fake-twitter-topology"

# Network
VPC_NAME = "fake-twitter-vpc"
VPC_CIDR = "10.0.0.0/16"
VPC_ZONES = 2
NAT_GATEWAYS = 1
CIDR_MASK = 24
ANY_IPV4_CIDR = "0.0.0.0/0"
PUBLIC_SUBNET_NAME = "Public-Subnet"
PRIVATE_SUBNET_NAME = "Private-Subnet"

# Frontend
ROOT_OBJECT = "index.html"
CDN_SERVICE_PRINCIPAL = "cloudfront.amazonaws.com"
CDN_SOURCE_CONDITION_KEY = "AWS:SourceArn"
STORAGE_READ_ACTIONS = ("s3:GetObject",)

# Database
DB_ENGINE = "postgres"
DB_ENGINE_VERSION = "15"
DB_PORT = 5432
DB_NAME = "fake_twitter_db"
DB_USERNAME = "postgres"
DB_INSTANCE_CLASS = "t3.micro"
DB_STORAGE_INITIAL_GB = 20
DB_STORAGE_MAX_GB = 100
DB_CONNECT_ACTIONS = ("rds-db:connect",)
JDBC_SCHEME = "jdbc:postgresql"
SECRET_EXCLUDE_CHARACTERS = " %+~`#$&*()|[]{}:;<>?!'/@\"\\"

# Backend
IMAGE_REPOSITORY = "fake-twitter-backend"
IMAGE_TAG = "latest"
TASK_CPU = 256
TASK_MEMORY_MIB = 512
DESIRED_REPLICAS = 2
CONTAINER_PORT = 8080
LISTENER_PORT = 80
LOG_STREAM_PREFIX = "backend"

# Environment variable names read by the backend service
ENV_DATASOURCE_URL = "SPRING_DATASOURCE_URL"
ENV_DATASOURCE_USERNAME = "SPRING_DATASOURCE_USERNAME"
ENV_DATASOURCE_PASSWORD = "SPRING_DATASOURCE_PASSWORD"
ENV_JWT_SECRET = "JWT_SECRET"

# Health check
HEALTH_CHECK_PATH = "/health"
HEALTH_CHECK_HTTP_CODES = "200"
HEALTH_CHECK_INTERVAL_SECONDS = 30
HEALTH_CHECK_TIMEOUT_SECONDS = 5
HEALTHY_THRESHOLD = 2
UNHEALTHY_THRESHOLD = 3
HEALTH_CHECK_GRACE_PERIOD_SECONDS = 60

# Ranges accepted by ELBv2 target groups (inclusive)
TARGET_GROUP_HEALTH_CHECK_RANGES = {
    "interval": (5, 300),
    "timeout": (2, 120),
    "healthy_threshold": (2, 10),
    "unhealthy_threshold": (2, 10),
}

# Output keys
OUTPUT_FRONTEND_URL = "FrontendURL"
OUTPUT_BACKEND_URL = "BackendURL"

# Fargate task sizes: cpu units -> allowed memory (MiB)
FARGATE_TASK_SIZES = {
    256: (512, 1024, 2048),
    512: tuple(range(1024, 4097, 1024)),
    1024: tuple(range(2048, 8193, 1024)),
    2048: tuple(range(4096, 16385, 1024)),
    4096: tuple(range(8192, 30721, 1024)),
}
