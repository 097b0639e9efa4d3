__version__ = "1.0.0"


def _get_version():
    return __version__
