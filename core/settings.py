from decimal import Decimal
from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'ramp',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


DATABASE_ENGINE = env.str('DATABASE_ENGINE', 'django.db.backends.sqlite3')

if DATABASE_ENGINE == 'django.db.backends.sqlite3':
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('PGSQL_DATABASE', 'ramp_settlement'),
            'USER': env.str('PGSQL_USER', 'postgres'),
            'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
            'HOST': env.str('PGSQL_HOST', 'localhost'),
            'PORT': env.int('PGSQL_PORT', 5432),
        }
    }

CACHES = {
    'default': {
        'BACKEND': env.str('CACHE_BACKEND', 'django.core.cache.backends.locmem.LocMemCache'),
        'LOCATION': env.str('CACHE_LOCATION', 'ramp-settlement'),
    }
}


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
}

# Rates
RATE_CACHE_TTL_SECONDS = env.int('RATE_CACHE_TTL_SECONDS', 1800)
RATE_SOURCE_TIMEOUT_SECONDS = env.float('RATE_SOURCE_TIMEOUT_SECONDS', 5)
RATE_FALLBACK = env.decimal('RATE_FALLBACK', Decimal('1550'))
ONRAMP_MARKUP = env.decimal('ONRAMP_MARKUP', Decimal('40'))
ONRAMP_FEE_PERCENT = env.decimal('ONRAMP_FEE_PERCENT', Decimal('1.5'))
ONRAMP_FEE_CAP = env.decimal('ONRAMP_FEE_CAP', Decimal('2000'))
OFFRAMP_MARKUP = env.decimal('OFFRAMP_MARKUP', Decimal('20'))
OFFRAMP_FEE_PERCENT = env.decimal('OFFRAMP_FEE_PERCENT', Decimal('1.0'))
OFFRAMP_FEE_CAP = env.decimal('OFFRAMP_FEE_CAP', Decimal('2'))
OFFRAMP_LP_FEE_PERCENT = env.decimal('OFFRAMP_LP_FEE_PERCENT', Decimal('0.5'))
PAYCREST_API_URL = env.str('PAYCREST_API_URL', 'https://api.paycrest.io/v1')
PAYCREST_API_KEY = env.str('PAYCREST_API_KEY', '')
EXCHANGERATE_API_URL = env.str(
    'EXCHANGERATE_API_URL', 'https://api.exchangerate-api.com/v4/latest/USD')
FAWAZAHMED_API_URL = env.str(
    'FAWAZAHMED_API_URL',
    'https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/usd.json',
)

# Limits
ONRAMP_MIN_FIAT = env.decimal('ONRAMP_MIN_FIAT', Decimal('1000'))
ONRAMP_MAX_FIAT = env.decimal('ONRAMP_MAX_FIAT', Decimal('1000000'))
ONRAMP_DAILY_LIMIT_FIAT = env.decimal('ONRAMP_DAILY_LIMIT_FIAT', Decimal('5000000'))
ONRAMP_AMOUNT_TOLERANCE = env.decimal('ONRAMP_AMOUNT_TOLERANCE', Decimal('1'))
OFFRAMP_MIN_STABLECOIN = env.decimal('OFFRAMP_MIN_STABLECOIN', Decimal('10'))
OFFRAMP_MAX_STABLECOIN = env.decimal('OFFRAMP_MAX_STABLECOIN', Decimal('5000'))

# Ledger
LEDGER_NETWORK = env.str('LEDGER_NETWORK', 'base')
LEDGER_RPC_URL = env.str('LEDGER_RPC_URL', '')
LEDGER_RPC_TIMEOUT_SECONDS = env.int('LEDGER_RPC_TIMEOUT_SECONDS', 10)
LEDGER_TX_TIMEOUT_SECONDS = env.int('LEDGER_TX_TIMEOUT_SECONDS', 120)
LEDGER_GAS_LIMIT = env.int('LEDGER_GAS_LIMIT', 100000)
CUSTODY_PRIVATE_KEY = env.str('CUSTODY_PRIVATE_KEY', '')
CUSTODY_ADDRESS = env.str('CUSTODY_ADDRESS', '')
WALLET_KEY_PROVIDER = env.str('WALLET_KEY_PROVIDER', '')

# Liquidity
LIQUIDITY_MIN_GAS_BALANCE = env.decimal('LIQUIDITY_MIN_GAS_BALANCE', Decimal('0.0005'))
LIQUIDITY_GAS_BUFFER = env.decimal('LIQUIDITY_GAS_BUFFER', Decimal('1.5'))
LIQUIDITY_RESERVATION_TTL_SECONDS = env.int(
    'LIQUIDITY_RESERVATION_TTL_SECONDS', 3600)

# Fiat collector
MONNIFY_API_KEY = env.str('MONNIFY_API_KEY', '')
MONNIFY_SECRET_KEY = env.str('MONNIFY_SECRET_KEY', '')
MONNIFY_CONTRACT_CODE = env.str('MONNIFY_CONTRACT_CODE', '')
MONNIFY_ALLOWED_IPS = env.list('MONNIFY_ALLOWED_IPS', default=[])

# Payout processor
LENCO_API_URL = env.str('LENCO_API_URL', 'https://api.lenco.co/access/v1')
LENCO_API_KEY = env.str('LENCO_API_KEY', '')
LENCO_ACCOUNT_ID = env.str('LENCO_ACCOUNT_ID', '')
LENCO_WEBHOOK_SECRET = env.str('LENCO_WEBHOOK_SECRET', '')
LENCO_ALLOWED_IPS = env.list('LENCO_ALLOWED_IPS', default=[])
LENCO_TIMEOUT_SECONDS = env.int('LENCO_TIMEOUT_SECONDS', 15)

# Reconciliation
RECONCILIATION_INTERVAL_SECONDS = env.int('RECONCILIATION_INTERVAL_SECONDS', 30)
RECONCILIATION_BATCH_SIZE = env.int('RECONCILIATION_BATCH_SIZE', 10)
RECONCILIATION_MAX_ATTEMPTS = env.int('RECONCILIATION_MAX_ATTEMPTS', 720)
RECONCILIATION_MAX_AGE_SECONDS = env.int('RECONCILIATION_MAX_AGE_SECONDS', 21600)

# Transaction authorization
AUTH_CHALLENGE_TTL_SECONDS = env.int('AUTH_CHALLENGE_TTL_SECONDS', 600)
AUTH_TOKEN_TTL_SECONDS = env.int('AUTH_TOKEN_TTL_SECONDS', 300)
AUTH_TOKEN_SECRET = env.str('AUTH_TOKEN_SECRET', '') or SECRET_KEY
WEBAUTHN_RP_ID = env.str('WEBAUTHN_RP_ID', 'localhost')
WEBAUTHN_ORIGINS = env.list('WEBAUTHN_ORIGINS', default=['http://localhost:3000'])
WEBAUTHN_REQUIRE_USER_VERIFICATION = env.bool(
    'WEBAUTHN_REQUIRE_USER_VERIFICATION', True)

# Alerts
OPERATOR_ALERT_WEBHOOK_URL = env.str('OPERATOR_ALERT_WEBHOOK_URL', '')
