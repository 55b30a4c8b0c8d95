"""
Django settings for stepline project.

値はすべて config/main.yaml から読み込む (環境変数 STEPLINE_CONFIG で差し替え可能)
"""
import os
from pathlib import Path

from stepline.config import load_config, resolve_paths

BASE_DIR = Path(__file__).resolve().parent.parent

MAIN_CONFIG_PATH = os.environ.get("STEPLINE_CONFIG", str(BASE_DIR / "config" / "main.yaml"))
MAIN_CONFIG = resolve_paths(load_config(MAIN_CONFIG_PATH), BASE_DIR)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", MAIN_CONFIG["SECRET_KEY"])
DEBUG = bool(MAIN_CONFIG["DEBUG"])
ALLOWED_HOSTS = list(MAIN_CONFIG["ALLOWED_HOSTS"])

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "step_linebot",
    "member_portal",
    "billing",
    "monitor",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "stepline.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "stepline.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": MAIN_CONFIG["DATABASE"],
    }
}

# レート制限の記録に使う
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "stepline",
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "ja"
TIME_ZONE = "Asia/Tokyo"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGIN_URL = "monitor:login"
