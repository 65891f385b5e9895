import os
import re
import hashlib
import json

import gzip
import base64
import boto3
from botocore.config import Config
from datetime import datetime
from datetime import timezone
from datetime import timedelta
import requests
from collections import defaultdict

from aws_xray_sdk import global_sdk_config
global_sdk_config.set_sdk_enabled(os.environ.get("AWS_XRAY_SDK_ENABLED") in ["1", "True", "true"])
from aws_xray_sdk.core import xray_recorder
from aws_xray_sdk.core import patch_all
patch_all()

import wflog
log = wflog.logger(__name__)


def utc_now():
    return datetime.now(tz=timezone.utc)

def epoch():
    return seconds2utc(0)

def seconds_from_epoch_utc(now=None):
    if now is None: now = utc_now()
    return int((now - epoch()).total_seconds())

def seconds2utc(seconds):
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)

def str2utc(s, default=None):
    if isinstance(s, datetime):
        return s
    if s is None or s == "":
        return default
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return datetime.fromisoformat(s)
    except ValueError:
        return default

def sha256(s):
    """ Return the SHA256 HEX digest related to the specified string.
    """
    m = hashlib.sha256()
    m.update(bytes(s,"utf-8"))
    return m.hexdigest()

def str2duration_seconds(s, no_exception=False, default=None):
    try:
        return int(s)
    except (TypeError, ValueError):
        try:
            # Parse timedelta metadata
            meta = s.split(",")
            metas = {}
            for m in meta:
                k, v = m.split("=")
                metas[k.strip()] = float(v)
            return timedelta(**metas).total_seconds()
        except Exception as e:
            if no_exception:
                return default
            raise e


def decode_json(value):
    if value is None:
        return None
    if isinstance(value, bytes):
        value = str(value, "utf-8")
    try:
        uncompress = gzip.decompress(base64.b64decode(value, validate=True))
        value      = str(uncompress, "utf-8")
    except (ValueError, OSError):
        pass
    return json.loads(value)

def encode_json(value, compress=False):
    value_j            = json.dumps(value, sort_keys=True, default=str)
    if compress:
        compressed = gzip.compress(bytes(value_j, "utf-8"), compresslevel=9)
        value_j    = str(base64.b64encode(compressed), "utf-8")
    return value_j


def parse_s3_url(url):
    """ Split a 's3://<bucket>/<key>' url into (bucket, key). Return None if malformed.
    """
    m = re.search(r"^s3://([-.\w]+)/(.*)", url)
    if m is None:
        return None
    bucket, key = [m.group(1), m.group(2)]
    key         = "/".join([p for p in key.split("/") if p != ""])
    return bucket, key

def put_url(url, value, client=None):
    if isinstance(value, str):
        value = bytes(value, "utf-8")

    # s3:// protocol management
    if url.startswith("s3://"):
        parts = parse_s3_url(url)
        if parts is None:
            log.warning(f"Malformed S3 url '{url}'!")
            return False
        bucket, key = parts
        if client is None: client = boto3.client("s3")
        try:
            client.put_object(Bucket=bucket, Key=key, Body=value)
            return True
        except Exception as e:
            log.warning(f"Failed to put data to S3 url '{url}' : {e}")
            return False

    # file:// protocol management
    file_str = "file://"
    if url.startswith(file_str):
        try:
            with open(url[len(file_str):], "wb") as f:
                f.write(value)
            return True
        except OSError as e:
            log.warning(f"Failed to write file url '{url}' : {e}")
            return False
    log.warning(f"Unknown protocol '{url}' for put_url()")
    return False

def get_url(url, throw_exception_on_warning=False, client=None):
    def _warning(msg):
        if throw_exception_on_warning:
            raise Exception(msg)
        else:
            log.warning(msg)

    if url is None or url == "":
        return None

    # internal: protocol management
    internal_str = "internal:"
    if url.startswith(internal_str):
        filename = url[len(internal_str):]
        paths = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
        if "WEBFLEET_DIR" in os.environ:
            paths.append(os.environ["WEBFLEET_DIR"])
        for path in paths:
            for sub_path in [".", "custo", "resources" ]:
                try:
                    with open("%s/%s/%s" % (path, sub_path, filename), "rb") as f:
                        return f.read()
                except OSError:
                    continue
        _warning("Fail to read internal url '%s'!" % url)
        return None

    # file:// protocol management
    file_str = "file://"
    if url.startswith(file_str):
        try:
            with open(url[len(file_str):], "rb") as f:
                return f.read()
        except OSError as e:
            _warning("Failed to read file url '%s' : %s" % (url, e))
            return None

    # s3:// protocol management
    if url.startswith("s3://"):
        parts = parse_s3_url(url)
        if parts is None:
            _warning("Malformed S3 url '%s'!" % url)
            return None
        bucket, key = parts
        if client is None: client = boto3.client("s3")
        try:
            response = client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except Exception as e:
            _warning("Failed to fetch S3 url '%s' : %s" % (url, e))
            return None

    # <other>:// protocols management
    try:
        response = requests.get(url, timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        _warning("Failed to fetch url '%s' : %s" % (url, e))
        return None
    return response.content

def parse_line_as_list_of_dict(string, with_leading_string=True, leading_keyname="_", default=None):
    if string is None:
        return default
    def _remove_escapes(s):
        return s.replace("\\;", ";").replace("\\,", ",").replace("\\=", "=")
    try:
        l = []
        for d in re.split("(?<!\\\\);", string):
            if d == "": continue

            dct       = defaultdict(str)
            el        = re.split("(?<!\\\\),", d)
            idx_start = 0
            if with_leading_string:
                key = el[0]
                if key == "": continue
                dct[leading_keyname] = _remove_escapes(key)
                idx_start = 1
            for item in el[idx_start:]:
                i_el = re.split("(?<!\\\\)=", item, maxsplit=1)
                dct[i_el[0]] = _remove_escapes(i_el[1]) if len(i_el) > 1 else True
            l.append(dct)
        return l
    except Exception:
        return default

@xray_recorder.capture()
def load_prerequisites(ctx, object_list):
    for o in object_list:
        xray_recorder.begin_subsegment("prereq:%s" % o)
        log.debug(f"Loading prerequisite '{o}'...")
        ctx[o].get_prerequisites()
        xray_recorder.end_subsegment()
    log.debug(f"End prerequisite loading...")

def initialize_clients(clients, ctx):
    config = Config(
       retries = {
       'max_attempts': 5,
       'mode': 'standard'
       })
    for c in clients:
        k = "%s.client" % c
        if k not in ctx:
            log.debug("Initialize client '%s'." % c)
            ctx[k] = boto3.client(c, config=config)
