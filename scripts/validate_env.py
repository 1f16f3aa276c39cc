"""Check the service environment before starting it.

Exit code 1 on any error (or any warning with --strict).
"""
import os
import sys
import argparse
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

SERVER_KEYS = ('ENVIRONMENT', 'HOST', 'PORT')
RETRY_STRATEGIES = ('default', 'aggressive', 'conservative', 'quick')

# name, default, type, min, max
NUMERIC_RANGES = (
    ('PORT', '8000', int, 1, 65535),
    ('OPENROUTER_TIMEOUT_MS', '30000', int, 1000, 300000),
    ('OPENROUTER_MAX_TOKENS', '2000', int, 1, 32000),
    ('OPENROUTER_TEMPERATURE', '0.7', float, 0.0, 2.0),
    ('OPENROUTER_TOP_P', '0.9', float, 0.0, 1.0),
    ('CIRCUIT_BREAKER_THRESHOLD', '5', int, 1, 1000),
    ('CIRCUIT_BREAKER_TIMEOUT_MS', '60000', int, 1000, 3600000),
    ('RATE_LIMIT_MAX_REQUESTS', '10', int, 1, 10000),
    ('RATE_LIMIT_WINDOW_MS', '60000', int, 1000, 86400000),
    ('DUPLICATE_SIMILARITY_THRESHOLD', '0.8', float, 0.0, 1.0),
)


def check_settings():
    errors, warnings = [], []

    missing = [k for k in SERVER_KEYS if not os.getenv(k)]
    if missing:
        errors.append('missing server settings: ' + ', '.join(missing))

    for name, default, cast, low, high in NUMERIC_RANGES:
        raw = os.getenv(name, default)
        try:
            value = cast(raw)
        except ValueError:
            errors.append(f'{name}={raw!r} is not a valid {cast.__name__}')
            continue
        if not low <= value <= high:
            errors.append(f'{name}={value} outside [{low}, {high}]')

    if os.getenv('RETRY_STRATEGY', 'default') not in RETRY_STRATEGIES:
        errors.append('RETRY_STRATEGY must be one of ' + '|'.join(RETRY_STRATEGIES))

    key = os.getenv('OPENROUTER_API_KEY', '')
    if not key:
        warnings.append('OPENROUTER_API_KEY not set, candidates will come from the mock generator')
    elif not key.startswith('sk-or-'):
        warnings.append('OPENROUTER_API_KEY does not look like an OpenRouter key (sk-or-...)')

    if urlparse(os.getenv('OPENROUTER_BASE_URL', 'https://openrouter.ai/api/v1')).scheme not in ('http', 'https'):
        errors.append('OPENROUTER_BASE_URL must be an http(s) URL')

    if not os.getenv('DATABASE_URL'):
        warnings.append('DATABASE_URL not set, flashcards are kept in process memory')

    return errors, warnings


def check_connectivity():
    errors, warnings = [], []

    key = os.getenv('OPENROUTER_API_KEY')
    if key:
        from openai import OpenAI
        try:
            OpenAI(api_key=key, base_url=os.getenv('OPENROUTER_BASE_URL', 'https://openrouter.ai/api/v1')).models.list()
            print('openrouter: reachable')
        except Exception as e:
            warnings.append(f'openrouter unreachable: {e}')

    dsn = os.getenv('DATABASE_URL')
    if dsn:
        import psycopg2
        try:
            with psycopg2.connect(dsn, connect_timeout=5) as conn:
                with conn.cursor() as cur:
                    cur.execute('SELECT 1')
            print('postgres: reachable')
        except Exception as e:
            errors.append(f'postgres unreachable: {e}')

    redis_url = os.getenv('REDIS_URL')
    if redis_url:
        import redis
        try:
            redis.from_url(redis_url, socket_timeout=3).ping()
            print('redis: reachable')
        except Exception as e:
            # redis only backs the rate limiter and cache, both fall back to memory
            warnings.append(f'redis unreachable: {e}')

    return errors, warnings


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument('--strict', '-s', action='store_true', help='fail on warnings too')
    parser.add_argument('--offline', action='store_true', help='skip connectivity checks')
    parser.add_argument('--env-file', default=str(Path(__file__).resolve().parent.parent / '.env'))
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)

    errors, warnings = check_settings()
    if not args.offline:
        more_errors, more_warnings = check_connectivity()
        errors += more_errors
        warnings += more_warnings

    for w in warnings:
        print(f'WARN  {w}')
    for e in errors:
        print(f'ERROR {e}')

    if errors or (args.strict and warnings):
        print(f'environment check failed ({len(errors)} errors, {len(warnings)} warnings)')
        return 1
    print('environment ok')
    return 0


if __name__ == '__main__':
    sys.exit(main())
