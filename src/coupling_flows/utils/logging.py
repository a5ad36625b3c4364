import logging


logger = logging.getLogger("coupling_flows")
logger.addHandler(logging.NullHandler())


def _log(msg, *args, callback_fn: callable = print, **kwargs):
    callback_fn(msg.format(*args, **kwargs))


def debug(msg, *args, **kwargs):
    if logger.isEnabledFor(logging.DEBUG):
        _log(msg, *args, callback_fn=logger.debug, **kwargs)


def debug_enabled():
    return logger.isEnabledFor(logging.DEBUG)
