from __future__ import annotations
import os
from recipe_feed_server.core.config import settings
from recipe_feed_server.core.logging_config import configure_logging
from recipe_feed_server.db.session import init_db


def main():
    configure_logging(settings.log_level)
    print(f"[entrypoint] starting version={settings.version} db={settings.database_url} log_level={settings.log_level}", flush=True)
    print(f"[entrypoint] data_dir={settings.data_dir}", flush=True)
    for line in settings.diagnostics or []:
        print(f"[entrypoint][config] {line}", flush=True)
    init_db()
    import uvicorn
    from uvicorn.config import LOGGING_CONFIG
    host = os.getenv('FEED_SERVER_HOST', '0.0.0.0')
    port = int(os.getenv('FEED_SERVER_PORT', '4160'))
    print(f"[entrypoint] launching uvicorn on {host}:{port}", flush=True)
    try:
        uvicorn.run(
            'recipe_feed_server.main:app',
            host=host,
            port=port,
            reload=False,
            log_level=settings.log_level.lower(),
            log_config=LOGGING_CONFIG,
        )
    except BaseException as exc:  # catch SystemExit too
        import traceback
        print(f"[entrypoint] uvicorn crashed: {exc}", flush=True)
        traceback.print_exc()
        raise
    finally:
        print("[entrypoint] uvicorn stopped", flush=True)

if __name__ == '__main__':  # pragma: no cover
    main()
