#!/usr/bin/env python3
"""
UART SMS Gateway - Entry point
Wires storage, notifier, serial link manager, scheduler and the REST API
together and serves them

Licensed under Apache License 2.0
"""

import atexit
import logging
import os
import signal
import sys

from . import __version__
from .api import create_app
from .backoff import Backoff
from .config import ConfigError, config_path, ensure_api_token, load_config
from .const import PROPERTY_NOTIFICATION_CHANNELS
from .handlers import MessageRouter
from .notifier import Notifier
from .scheduler import SchedulerService
from .serial_service import SerialService
from .status_cache import StatusCache
from .storage import MessageStore, PropertyStore, ScheduledTaskStore

SSL_CERT = '/ssl/cert.pem'
SSL_KEY = '/ssl/key.pem'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
}


def setup_logging(log_level: str = 'info'):
    """Configure logging with timestamp"""
    logging.basicConfig(
        level=LOG_LEVELS.get(log_level, logging.INFO),
        format='[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    logging.getLogger().setLevel(LOG_LEVELS.get(log_level, logging.INFO))

    # Suppress Flask development server warnings
    logging.getLogger('werkzeug').setLevel(logging.ERROR)


class Gateway:
    """All long-lived services of one gateway process"""

    def __init__(self, config):
        self.config = config
        data_dir = config['data_dir']

        self.message_store = MessageStore(data_dir, max_messages=config['max_messages'])
        self.task_store = ScheduledTaskStore(data_dir)
        self.property_store = PropertyStore(
            data_dir, defaults={PROPERTY_NOTIFICATION_CHANNELS: config['notification_channels']})

        self.notifier = Notifier(self.property_store)
        self.status_cache = StatusCache()
        self.router = MessageRouter(self.status_cache, self.message_store, self.notifier,
                                    status_ttl=config['status_cache_ttl'])
        self.serial_service = SerialService(
            self.router,
            self.message_store,
            status_cache=self.status_cache,
            serial_port=config['serial_port'],
            refresh_interval=config['status_refresh_interval'],
            send_confirm_timeout=config['send_confirm_timeout'],
            backoff=Backoff(config['reconnect_min_delay'], config['reconnect_max_delay']),
        )
        self.scheduler = SchedulerService(self.task_store, self.serial_service,
                                          check_hour=config['scheduler_check_hour'])
        self.router.send_result_callback = self.scheduler.on_send_result
        self._stopped = False

    def start(self):
        self.serial_service.start()
        if self.config['scheduler_enabled']:
            self.scheduler.start()

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.scheduler.stop()
        self.serial_service.stop()

    def create_app(self):
        return create_app(self.serial_service, self.message_store, self.property_store,
                          self.notifier, self.scheduler, self.config['api_token'])


def main():
    setup_logging()
    try:
        config = load_config()
    except ConfigError as e:
        logging.error(f"❌ {e}")
        sys.exit(1)

    setup_logging(config['log_level'])
    logging.info(f"UART SMS Gateway v{__version__}")
    logging.debug(f"Configuration loaded from {config_path()}")

    if ensure_api_token(config):
        logging.warning(f"⚠️ No api_token configured, generated one for this run: {config['api_token']}")

    gateway = Gateway(config)

    # Setup signal handlers for graceful shutdown
    def signal_handler(signum, frame):
        """Handle shutdown signals (SIGTERM, SIGINT)"""
        logging.info(f"🛑 Received shutdown signal {signum}, stopping...")
        try:
            gateway.stop()
            logging.info("✅ Gateway stopped")
        except Exception as e:
            logging.error(f"❌ Error during shutdown: {e}")
        finally:
            sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    def cleanup():
        """Cleanup function called on normal exit"""
        logging.info("🧹 Cleanup: stopping background services...")
        try:
            gateway.stop()
        except Exception as e:
            logging.error(f"Error during cleanup: {e}")

    # Register atexit handler as backup
    atexit.register(cleanup)

    gateway.start()
    app = gateway.create_app()

    host = config['host']
    port = config['port']
    ssl = config['ssl']
    if ssl and not (os.path.exists(SSL_CERT) and os.path.exists(SSL_KEY)):
        logging.error(f"❌ SSL enabled but {SSL_CERT} or {SSL_KEY} is missing, serving plain HTTP")
        ssl = False

    print(f"🚀 UART SMS Gateway v{__version__}")
    print(f"🌐 API: {'https' if ssl else 'http'}://{host}:{port}/api (docs at /docs/)")
    print(f"🔌 Serial port: {config['serial_port'] or 'auto-detect'}")
    print(f"🔒 SSL: {'Enabled' if ssl else 'Disabled'}")
    print(f"⏰ Scheduler: {'Enabled' if config['scheduler_enabled'] else 'Disabled'}")

    try:
        if ssl:
            app.run(port=port, host=host, ssl_context=(SSL_CERT, SSL_KEY),
                    debug=False, use_reloader=False, threaded=True)
        else:
            app.run(port=port, host=host, debug=False, use_reloader=False, threaded=True)
    finally:
        gateway.stop()


if __name__ == '__main__':
    main()
