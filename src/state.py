import misc
import config as Cfg

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)

class StateManager:
    """ Key/value state of the control loops.

    Control passes are stateless between runs: everything they must remember (cooldown dates, breach start dates,
    alarm state values...) is written here. The table lives in memory and, when 'app.state_url' is set, is reloaded
    at the start of each pass and persisted at its end.
    """
    def __init__(self, context):
        self.context = context
        self.table   = {}
        self.dirty   = False
        Cfg.register({
            "app.state_url,Stable": {
                "DefaultValue": "",
                "Format"      : "String",
                "Description" : """Url ('s3://' or 'file://') where the control loop state is persisted between runs.

When empty, the state is kept in memory only (suitable for the long running daemon).
                """
            },
            "state.default_ttl": "days=1"
        }, ignore_double_definition=True)

    @xray_recorder.capture(name="StateManager.get_prerequisites")
    def get_prerequisites(self):
        url = Cfg.get("app.state_url")
        if url == "":
            self.expire()
            return
        content = misc.get_url(url, client=self.context.get("s3.client"))
        if content is None:
            log.log(log.NOTICE, "No persisted state at '%s'. Starting with an empty state." % url)
            return
        try:
            self.table = misc.decode_json(content)
        except ValueError as e:
            log.warning("Failed to decode persisted state '%s' : %s (Notice: It will be safely ignored!)" % (url, e))
            return
        self.expire()

    def persist(self):
        url = Cfg.get("app.state_url")
        if url == "" or not self.dirty:
            return
        if misc.put_url(url, misc.encode_json(self.table, compress=True), client=self.context.get("s3.client")):
            self.dirty = False

    def expire(self):
        now = misc.seconds_from_epoch_utc(now=self.context["now"])
        for key in list(self.table.keys()):
            expiration = self.table[key].get("ExpirationTime")
            if expiration is not None and expiration <= now:
                log.debug("Wiping outdated state key '%s'..." % key)
                del self.table[key]
                self.dirty = True

    def set_state(self, key, value, TTL=None):
        if TTL is None: TTL = Cfg.get_duration_secs("state.default_ttl")
        if value is None or value == "":
            if key in self.table:
                del self.table[key]
                self.dirty = True
            return
        record = {"Value": str(value)}
        if TTL:
            record["ExpirationTime"] = misc.seconds_from_epoch_utc(now=self.context["now"]) + int(TTL)
        self.table[key] = record
        self.dirty      = True

    def get_state(self, key, default=None):
        record = self.table.get(key)
        if record is None:
            return default
        expiration = record.get("ExpirationTime")
        if expiration is not None and expiration <= misc.seconds_from_epoch_utc(now=self.context["now"]):
            return default
        return record["Value"]

    def get_state_date(self, key, default=None):
        d = self.get_state(key)
        if d is None or d == "": return default
        return misc.str2utc(d, default=default)

    def get_state_int(self, key, default=0):
        try:
            return int(self.get_state(key))
        except (TypeError, ValueError):
            return default

    def get_state_json(self, key, default=None):
        try:
            v = misc.decode_json(self.get_state(key))
            return v if v is not None else default
        except ValueError:
            return default

    def set_state_json(self, key, value, compress=False, TTL=None):
        self.set_state(key, misc.encode_json(value, compress=compress), TTL=TTL)
