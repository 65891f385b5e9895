""" config.py

License: MIT

Layered configuration registry.

Every module registers its configuration keys with their built-in default values in its __init__(). Keys
suffixed with ',Stable' carry a metadata dict (DefaultValue, Format, Description) and are part of the documented
configuration surface.

Layers, from lowest to highest priority:
    * Built-in defaults (registered by modules),
    * YAML files listed in 'config.loaded_files' and in the WEBFLEET_CONFIG_URLS environment variable,
    * Runtime overrides set with set().

Values are always stored as they were written (string, int...) and converted by the typed getters.
"""
import yaml

import misc
import debug as Dbg

import wflog
log = wflog.logger(__name__)

_init = None

from aws_xray_sdk.core import xray_recorder


class ConfigurationError(Exception):
    pass


@xray_recorder.capture(name="config.init")
def init(context, with_predefined_configuration=True):
    global _init
    _init                = {}
    _init["context"]     = context
    _init["all_configs"] = [{
        "source": "Built-in defaults",
        "config": {},
        "metas" : {}
        }]
    _init["overrides"]   = {
        "source": "Runtime overrides",
        "config": {},
        "metas" : {}
        }
    _init["loaded_files"] = []
    register({
             "config.dump_configuration,Stable" : {
                 "DefaultValue": "0",
                 "Format"      : "Bool",
                 "Description" : """Display all relevant configuration parameters in the logs at each control pass.

    Used for debugging purpose.
                 """
             },
             "config.loaded_files,Stable" : {
                 "DefaultValue" : "",
                 "Format"       : "StringList",
                 "Description"  : """A semi-column separated list of URL to load as configuration.

Files are YAML dicts of configuration keys. They are loaded in sequence and stacked, allowing override between layers.
Supported URL schemes are 'internal:', 'file://', 's3://' and 'http(s)://'.

This key is evaluated again after each URL parsing meaning that a layer can redefine the 'config.loaded_files' to load further
YAML files.
                 """
             },
             "config.max_file_hierarchy_depth" : 10,
    })

    files_to_load = []
    if with_predefined_configuration:
        files_to_load.extend(get_list("config.loaded_files", default=[]))
    if "WEBFLEET_CONFIG_URLS" in context:
        files_to_load.extend(context["WEBFLEET_CONFIG_URLS"].split(";"))

    loaded_files = []
    i = 0
    while i < len(files_to_load):
        f = files_to_load[i]
        i += 1
        if f == "":
            continue

        fd = None
        c  = None
        try:
            fd = misc.get_url(f, throw_exception_on_warning=True)
            c  = yaml.safe_load(fd)
            if c is None: c = {} # Empty YAML file
            if not isinstance(c, dict):
                raise ConfigurationError("Configuration file '%s' must contain a YAML dict!" % f)
            loaded_files.append({
                    "source": f,
                    "config": c
                })
            if "config.loaded_files" in c and c["config.loaded_files"] != "":
                files_to_load.extend(c["config.loaded_files"].split(";"))
            if i > get_int("config.max_file_hierarchy_depth"):
                log.warning("Too much config file loads (%s)!! Stopping here!" % [x["source"] for x in loaded_files])
                break
        except Exception as e:
            if fd  is None:
                log.warning("Failed to load config file '%s'! %s (Notice: It will be safely ignored!)" % (f, e))
            elif c is None:
                log.warning("Failed to parse config file '%s'! %s (Notice: It will be safely ignored!)" % (f, e))
            else:
                log.exception("Failed to process config file '%s'! (Notice: It will be safely ignored!)" % f)
    _init["loaded_files"] = loaded_files
    _build_layers()


def register(config, ignore_double_definition=False):
    if _init is None:
        raise ConfigurationError("Configuration registry used before config.init()!")
    layer_struct = _init["all_configs"][0]
    layer_config = layer_struct["config"]
    layer_metas  = layer_struct["metas"]
    for c in config:
        p = misc.parse_line_as_list_of_dict(c)
        key = p[0]["_"]
        if key in layer_config:
            if not ignore_double_definition:
                raise ConfigurationError("Double definition of key '%s'!" % key)
            continue
        layer_config[key] = config[c]
        layer_metas[key]  = dict(p[0])
    _build_layers()


def _build_layers():
    layers = []
    layers.extend(_init["all_configs"])
    layers.extend(_init["loaded_files"])
    layers.append(_init["overrides"])
    _init["config_layers"] = layers
    compile_keys()

def _get_config_layers(reverse=False):
    if not reverse:
        return _init["config_layers"]
    l = _init["config_layers"].copy()
    l.reverse()
    return l

def is_stable_key(key):
    metas = _init["all_configs"][0]["metas"]
    return key in metas and "Stable" in metas[key] and metas[key]["Stable"]

def keys(prefix=None, only_stable_keys=False):
    k = []
    for config_layer in _get_config_layers():
        c = config_layer["config"]
        for key in c:
            if key.startswith("#"): continue # Ignore commented keys
            if only_stable_keys and not is_stable_key(key):
                continue
            if prefix is not None and not key.startswith(prefix): continue
            if isinstance(c[key], list):
                continue
            if key not in k:
                k.append(key)
    return k

def dumps(only_stable_keys=True):
    c = {}
    for k in keys(only_stable_keys=only_stable_keys):
        c[k] = get_extended(k).copy()
        del c[k]["Success"]
    return c

def dump():
    builtin_layer = _init["all_configs"][0]
    r             = dumps(only_stable_keys=False)
    for k in r:
        key_info = r[k]
        if "WARNING" in key_info["Status"]:
            log.warning(key_info["Status"])
        elif (not key_info["Stable"] and k in builtin_layer["config"] and
                key_info["ConfigurationOrigin"] != builtin_layer["source"]):
            log.warning("Non STABLE key '%s' defined in '%s'! Its semantic and/or existence MAY change in future releases!"
                % (k, key_info["ConfigurationOrigin"]))

    if get_int("config.dump_configuration"):
        log.info(Dbg.pprint(dumps(only_stable_keys=True)))
        log.info("Loaded files: %s " % [ x["source"] for x in _init["loaded_files"]])

def compile_keys():
    """ Build a dictionary to quickly lookup keys.
    """
    builtin_layer          = _init["all_configs"][0]["config"]
    _init["compiled_keys"] = {}

    for key in keys(only_stable_keys=False):
        key_def = None
        if key in builtin_layer and isinstance(builtin_layer[key], dict):
            key_def = builtin_layer[key]

        r = _unknown_key(key)
        for config in _get_config_layers(reverse=True):
            c = config["config"]
            if key not in c or isinstance(c[key], list):
                continue
            if c is not builtin_layer and isinstance(c[key], dict):
                continue
            r = {
                    "Key"                 : key,
                    "Success"             : True,
                    "ConfigurationOrigin" : config["source"],
                    "Status"              : "Key found in '%s'" % config["source"],
                    "Stable"              : is_stable_key(key),
                    "Value"               : c[key]
                }
            if key_def is not None:
                for k in key_def:
                    r[k] = key_def[k]
                r["Value"] = key_def["DefaultValue"] if c is builtin_layer else c[key]
            if key not in builtin_layer:
                r["Status"] = "[WARNING] Key '%s' doesn't exist as built-in default (Misconfiguration??) but %s!" % (key, r["Status"])
            break
        _init["compiled_keys"][key] = r

def _unknown_key(key):
    return {
        "Key": key,
        "Value" : None,
        "Success" : False,
        "ConfigurationOrigin": "None",
        "Status": "[WARNING] Unknown configuration key '%s'" % key,
        "Stable": False
    }

def set(key, value):
    """ Set a runtime override. A None value removes the override.
    """
    overrides = _init["overrides"]["config"]
    if value is None:
        overrides.pop(key, None)
    else:
        overrides[key] = value
    compile_keys()

def get_extended(key, fmt=None):
    if _init is None:
        raise ConfigurationError("Configuration registry used before config.init()!")
    if key in _init["compiled_keys"]:
        r = _init["compiled_keys"][key].copy()
    else:
        r = _unknown_key(key)
    if fmt and r["Value"] is not None:
        r["Value"] = str(r["Value"]).format(**fmt)
    return r

def get(key, cls=str, none_on_failure=False, fmt=None):
    r = get_extended(key, fmt=fmt)
    if not r["Success"]:
        if none_on_failure:
            return None
        else:
            raise ConfigurationError(r["Status"])
    try:
        if cls == str:
            return str(r["Value"]) if r["Value"] is not None else None
        if cls == int:
            return int(r["Value"])
        if cls == float:
            return float(r["Value"])
    except (TypeError, ValueError) as e:
        if none_on_failure:
            return None
        raise ConfigurationError(f"Failed to convert key '{key}' with value '%s' : {e}" % r["Value"])

def get_int(key, fmt=None):
    return get(key, cls=int, fmt=fmt)

def get_float(key, fmt=None):
    return get(key, cls=float, fmt=fmt)

def get_list(key, separator=";", default=None, fmt=None):
    v = get(key, fmt=fmt)
    if v is None or v == "": return default
    return [i for i in v.split(separator) if i != ""]

def get_duration_secs(key, fmt=None):
    try:
        return misc.str2duration_seconds(get(key, fmt=fmt))
    except Exception as e:
        raise ConfigurationError("[ERROR] Failed to parse config key '%s' as a duration! : %s" % (key, e))

def get_list_of_dict(key, fmt=None):
    v = get(key, fmt=fmt)
    if v is None: return []
    return misc.parse_line_as_list_of_dict(v)
