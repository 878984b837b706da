class ConfigurationError(Exception):
    """Configuración inválida o backend inalcanzable al arrancar."""
