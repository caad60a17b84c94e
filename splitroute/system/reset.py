import os
from splitroute.core import config
from splitroute.core.models import AppConfig

def reset_config() -> None:
    # Keep the file but drop repo path, selection and auth choice
    config.save_config(AppConfig())

def factory_defaults() -> None:
    try:
        os.remove(config.CONFIG_PATH)
    except FileNotFoundError:
        pass
