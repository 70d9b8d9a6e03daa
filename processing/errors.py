# processing/errors.py


class ConfigurationError(ValueError):
    """Invalid static configuration; raised before the control loop starts."""
