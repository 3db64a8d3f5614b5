# medreminder/bootstrap.py
from typing import Optional

from .config import Settings
from .crypto import android_ready, get_or_create_key
from .logs import install_logging, logger
from .notify import LocalNotifier, Notifier
from .service import ReminderService
from .storage import EncryptedStore, LocalClock


def build_service(settings: Optional[Settings] = None, notifier: Optional[Notifier] = None,
                  require_remote: bool = False) -> ReminderService:
    """Wire the encrypted store, the platform notifier and (when configured) Supabase."""
    settings = settings or Settings.from_env()
    install_logging(settings.log_path)

    key = get_or_create_key(settings.key_path)
    store = EncryptedStore(settings.store_path, key, settings.tmp_dir)
    clock = LocalClock()

    if notifier is None:
        if android_ready():
            from .android import AndroidAlarmNotifier
            notifier = AndroidAlarmNotifier(store, settings.delivered_path, clock)
        else:
            notifier = LocalNotifier(clock)

    remote = None
    connectivity = None
    if require_remote or settings.remote_configured:
        from .remote import SupabaseRemote
        remote = SupabaseRemote(settings)
        connectivity = remote.connectivity_probe(settings.connectivity_timeout_s)
    else:
        logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set; running local-only")

    logger.info(f"data dir: {settings.base_dir}")
    return ReminderService(settings, store, notifier, remote, connectivity, clock)
