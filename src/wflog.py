import os
import logging
NOTICE = 25
logging.addLevelName(NOTICE,"NOTICE")


def logger(name):
    logger        = logging.getLogger(name)
    logger.NOTICE = NOTICE
    logger.DEBUG  = logging.DEBUG
    logger.WARNING = logging.WARNING

    log_spec = None
    if "WEBFLEET_LOGLEVELS" in os.environ:
        log_spec = {}
        for spec in os.environ["WEBFLEET_LOGLEVELS"].split(","):
            if spec == "": continue
            k, v = spec.split("=")
            log_spec[k] = v
    is_debug = os.environ.get("WEBFLEET_DEBUG") in ["1", "true", "True"]

    log_level = logging.DEBUG if is_debug else logging.INFO
    if log_spec is not None and (name in log_spec or "*" in log_spec):
        module_log_spec = log_spec[name] if name in log_spec else log_spec["*"]
        level = getattr(logging, module_log_spec, None)
        if level is None:
            level = getattr(logger, module_log_spec, None)
        if not isinstance(level, int):
           logger.warning('Invalid log level: %s' % module_log_spec)
        else:
            log_level = level

    logger.setLevel(log_level)
    logger.propagate = False

    # Module loggers can be requested more than once (tests reload modules)
    if len(logger.handlers):
        return logger

    ch = logging.StreamHandler()
    ch.setLevel(log_level)

    extra_logging = "%(asctime)s - " if is_debug else ""
    formatter = logging.Formatter("[%%(levelname)s] %s%%(filename)s:%%(lineno)d - %%(message)s" % extra_logging)
    ch.setFormatter(formatter)

    logger.addHandler(ch)
    return logger
