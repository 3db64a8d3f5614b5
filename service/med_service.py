# service/med_service.py
# Android background service: keeps reminders converged and the offline
# queue drained while the UI is closed.
import os
import sys
import time
from pathlib import Path

try:
    from jnius import autoclass
except Exception:
    autoclass = None

# the service entry point runs from the service/ directory
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from medreminder.bootstrap import build_service  # noqa: E402
from medreminder.config import DATA_DIR_NAME, Settings  # noqa: E402
from medreminder.logs import logger  # noqa: E402


def _android_files_dir():
    if autoclass is None:
        return None
    try:
        PythonService = autoclass("org.kivy.android.PythonService")
        return Path(str(PythonService.mService.getFilesDir().getAbsolutePath()))
    except Exception:
        return None


def _settings() -> Settings:
    # Match main.py: under the app files dir
    if not os.environ.get("ANDROID_PRIVATE"):
        files_dir = _android_files_dir()
        if files_dir is not None:
            os.environ.setdefault("MEDREMINDER_HOME", str(files_dir / DATA_DIR_NAME))
    return Settings.from_env()


def main_loop():
    settings = _settings()
    service = build_service(settings)
    service.start(run_loop=False)
    try:
        service.refresh()
    except Exception:
        logger.exception("initial refresh failed")

    while True:
        try:
            service.tick()
        except Exception:
            logger.exception("service tick failed")
        time.sleep(settings.poll_interval_s)


if __name__ == "__main__":
    main_loop()
