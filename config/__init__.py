from .config_loader import ClientConfig, Config, config, load_client_config

__all__ = ['ClientConfig', 'Config', 'config', 'load_client_config']
