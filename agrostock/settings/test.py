from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

STRIPE_SECRET_KEY = 'sk_test_51AgroStockSecretKey'
STRIPE_PUBLISHABLE_KEY = 'pk_test_51AgroStockPublishableKey'
STRIPE_WEBHOOK_SECRET = 'whsec_agrostock_webhook_secret'
STRIPE_API_BASE = 'https://api.stripe.test'

CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
