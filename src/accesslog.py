""" accesslog.py

License: MIT

Access log of the router.

Every handled request is queued as one log line (Application Load Balancer access log format). A background thread
flushes the queue every 'accesslog.emit_interval' as a gzip object in the S3 bucket 'accesslog.bucket' under the
prefix 'accesslog.prefix'. Delivery is asynchronous and best-effort: a failed upload is logged and its lines are lost,
the router is never slowed down or failed by the log sink.
"""
import gzip
import queue
import threading
import uuid

import misc
import config as Cfg

import wflog
log = wflog.logger(__name__)


def _format_time(date):
    return date.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _quote(s):
    return '"%s"' % str(s).replace('"', '\\"') if s not in [None, ""] else '"-"'


class AccessLogSink:
    def __init__(self, context):
        self.context    = context
        self.thread     = None
        self.stop_event = threading.Event()
        self.dropped    = 0
        Cfg.register({
            "accesslog.bucket,Stable": {
                "DefaultValue": "",
                "Format"      : "String",
                "Description" : """S3 bucket receiving the access log objects.

When empty, access log lines are formatted and discarded at each flush.
                """
            },
            "accesslog.prefix": "elbAccessLogs",
            "accesslog.emit_interval,Stable": {
                "DefaultValue": "minutes=5",
                "Format"      : "Duration",
                "Description" : """Period between two access log object uploads.
                """
            },
            "accesslog.account_id": "000000000000",
            "accesslog.load_balancer_name": "app/WebALB/0123456789abcdef",
            "accesslog.max_queue_size": 100000,
        }, ignore_double_definition=True)
        self.queue = queue.Queue(maxsize=Cfg.get_int("accesslog.max_queue_size"))

    def format_record(self, record):
        """ Format a request record as an Application Load Balancer access log line.

        :param record: dict with 'Time', 'ClientAddress', 'ClientPort', 'Target' (dict with 'Address' and 'Port' or None),
                       'RequestProcessingTime', 'TargetProcessingTime', 'ResponseProcessingTime', 'ElbStatusCode',
                       'TargetStatusCode', 'ReceivedBytes', 'SentBytes', 'Method', 'Url', 'Protocol', 'UserAgent'
        """
        target = record.get("Target")
        fields = [
            "http",
            _format_time(record["Time"]),
            Cfg.get("accesslog.load_balancer_name"),
            "%s:%s" % (record.get("ClientAddress", "-"), record.get("ClientPort", 0)),
            "%s:%s" % (target["Address"], target["Port"]) if target is not None else "-",
            "%.3f" % record.get("RequestProcessingTime", 0),
            "%.3f" % record["TargetProcessingTime"] if record.get("TargetProcessingTime") is not None else "-1",
            "%.3f" % record.get("ResponseProcessingTime", 0),
            str(record["ElbStatusCode"]),
            str(record["TargetStatusCode"]) if record.get("TargetStatusCode") is not None else "-",
            str(record.get("ReceivedBytes", 0)),
            str(record.get("SentBytes", 0)),
            _quote("%s %s %s" % (record.get("Method", "-"), record.get("Url", "-"), record.get("Protocol", "HTTP/1.1"))),
            _quote(record.get("UserAgent")),
            "-",
            "-",
            self.context.get("GroupName", "-"),
            _quote("Root=%s" % record.get("TraceId", "-"))
        ]
        return " ".join(fields)

    def log_request(self, record):
        try:
            self.queue.put_nowait(self.format_record(record))
        except queue.Full:
            self.dropped += 1
            if self.dropped % 1000 == 1:
                log.warning("Access log queue full: %d record(s) dropped so far!" % self.dropped)

    def drain(self):
        lines = []
        while True:
            try:
                lines.append(self.queue.get_nowait())
            except queue.Empty:
                return lines

    def get_object_key(self, now):
        region  = self.context.get("AWS_DEFAULT_REGION", "us-east-1")
        account = Cfg.get("accesslog.account_id")
        lb_name = Cfg.get("accesslog.load_balancer_name").replace("/", ".")
        return "%s/AWSLogs/%s/elasticloadbalancing/%s/%s/%s_elasticloadbalancing_%s_%s_%s_%s.log.gz" % (
                Cfg.get("accesslog.prefix").strip("/"), account, region, now.strftime("%Y/%m/%d"),
                account, region, lb_name, now.strftime("%Y%m%dT%H%MZ"), uuid.uuid4().hex[:8])

    def flush(self, now=None):
        """ Upload the queued lines as one gzip object.

        :return The S3 key of the uploaded object or None
        """
        lines = self.drain()
        if len(lines) == 0:
            return None
        bucket = Cfg.get("accesslog.bucket")
        if bucket == "":
            log.debug("No access log bucket configured: discarding %d line(s)." % len(lines))
            return None
        if now is None: now = misc.utc_now()
        key  = self.get_object_key(now)
        body = gzip.compress(bytes("\n".join(lines) + "\n", "utf-8"))
        try:
            misc.initialize_clients(["s3"], self.context)
            self.context["s3.client"].put_object(Bucket=bucket, Key=key, Body=body)
        except Exception as e:
            log.warning("Failed to upload %d access log line(s) to s3://%s/%s : %s" % (len(lines), bucket, key, e))
            return None
        log.debug("Uploaded %d access log line(s) to s3://%s/%s." % (len(lines), bucket, key))
        return key

    def _flush_loop(self):
        interval = Cfg.get_duration_secs("accesslog.emit_interval")
        while not self.stop_event.wait(interval):
            self.flush()

    def start(self):
        if self.thread is not None:
            return
        self.stop_event.clear()
        self.thread = threading.Thread(target=self._flush_loop, name="accesslog-flusher", daemon=True)
        self.thread.start()

    def stop(self):
        if self.thread is not None:
            self.stop_event.set()
            self.thread.join()
            self.thread = None
        self.flush()
