""" router.py

License: MIT

HTTP listener of the load balancer.

Each request is forwarded to one healthy target selected in round robin order by the target group. There is no
transparent retry: a failure is answered to the client right away.
    * No healthy target: 503 (generated by the router),
    * Target connection failure: 502 (generated by the router),
    * Target timeout: 504 (generated by the router),
    * Otherwise the target response is returned as is.

Router generated errors are counted as 'HTTPCode_ELB_5XX_Count', target 5XX responses as 'HTTPCode_Target_5XX_Count'.
Every handled request is appended to the access log.
"""
import time

import requests
from flask import Flask, Response, request

import misc
import config as Cfg

import wflog
log = wflog.logger(__name__)

METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]

# Headers that only make sense on a single connection
HOP_BY_HOP_HEADERS = ["connection", "keep-alive", "proxy-authenticate", "proxy-authorization", "te", "trailers",
        "transfer-encoding", "upgrade", "content-length", "content-encoding", "host"]

ERROR_PAGES = {
    502: "502 Bad Gateway",
    503: "503 Service Temporarily Unavailable",
    504: "504 Gateway Time-out"
}


class HttpForwarder:
    """ Send a request to a target with requests.

    Raise requests.Timeout when the target does not answer in time and requests.RequestException when the
    connection fails.
    """
    def __init__(self, session=None):
        self.session = session if session is not None else requests.Session()

    def __call__(self, target, method, url, headers, body, timeout):
        response = self.session.request(method, "http://%s:%s%s" % (target["Address"], target["Port"], url),
                headers=headers, data=body, timeout=timeout, allow_redirects=False)
        return response.status_code, dict(response.headers), response.content


def filter_headers(headers):
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


def error_page(status):
    return bytes("<html>\r\n<head><title>%s</title></head>\r\n<body>\r\n<center><h1>%s</h1></center>\r\n</body>\r\n</html>\r\n" %
            (ERROR_PAGES[status], ERROR_PAGES[status]), "utf-8")


class Router:
    def __init__(self, context, targetgroup, cloudwatch, accesslog, forwarder=None, clock=None):
        self.context     = context
        self.targetgroup = targetgroup
        self.cloudwatch  = cloudwatch
        self.accesslog   = accesslog
        self.forwarder   = forwarder if forwarder is not None else HttpForwarder()
        self.clock       = clock if clock is not None else misc.utc_now
        Cfg.register({
            "listener.idle_timeout,Stable": {
                "DefaultValue": "seconds=60",
                "Format"      : "Duration",
                "Description" : """Maximum time to wait for a target response before answering 504 to the client.
                """
            },
        }, ignore_double_definition=True)

    def forward(self, target, method, url, headers, body):
        """ Forward a request to a target.

        :return A tuple (elb_status_code, target_status_code, headers, content). target_status_code is None when
                the target did not answer.
        """
        try:
            status, response_headers, content = self.forwarder(target, method, url, headers, body,
                    Cfg.get_duration_secs("listener.idle_timeout"))
        except requests.Timeout as e:
            log.info("Target '%s' timed out: %s" % (target["Id"], e))
            return 504, None, {}, error_page(504)
        except requests.RequestException as e:
            log.info("Failed to reach target '%s': %s" % (target["Id"], e))
            return 502, None, {}, error_page(502)
        return status, status, filter_headers(response_headers), content

    def handle(self, method, url, headers, body, client_address="-", client_port=0, user_agent=None):
        """ Route one request.

        :return A tuple (status, headers, content)
        """
        received_at = self.clock()
        started     = time.monotonic()
        target      = self.targetgroup.select_target()
        if target is None:
            log.warning("No healthy target to serve '%s %s'!" % (method, url))
            elb_status, target_status, response_headers, content = 503, None, {}, error_page(503)
            target_time = None
        else:
            forwarded_headers = filter_headers(headers)
            forwarded_headers["X-Forwarded-For"]   = client_address
            forwarded_headers["X-Forwarded-Port"]  = str(self.context["settings"].listener_port)
            forwarded_headers["X-Forwarded-Proto"] = "http"
            try:
                elb_status, target_status, response_headers, content = self.forward(target, method, url,
                        forwarded_headers, body)
            finally:
                self.targetgroup.release_target(target["Id"])
            target_time = time.monotonic() - started

        self.cloudwatch.put_metric("RequestCount", 1, date=received_at)
        self.cloudwatch.put_metric("HTTPCode_ELB_5XX_Count", 1 if target_status is None else 0, date=received_at)
        self.cloudwatch.put_metric("HTTPCode_Target_5XX_Count",
                1 if target_status is not None and target_status >= 500 else 0, date=received_at)

        self.accesslog.log_request({
            "Time"                 : received_at,
            "ClientAddress"        : client_address,
            "ClientPort"           : client_port,
            "Target"               : target,
            "RequestProcessingTime": 0,
            "TargetProcessingTime" : target_time,
            "ResponseProcessingTime": 0,
            "ElbStatusCode"        : elb_status,
            "TargetStatusCode"     : target_status,
            "ReceivedBytes"        : len(body) if body is not None else 0,
            "SentBytes"            : len(content) if content is not None else 0,
            "Method"               : method,
            "Url"                  : url,
            "UserAgent"            : user_agent
        })
        return elb_status, response_headers, content


def create_app(router):
    """ Build the Flask application serving the listener.
    """
    app = Flask("webfleet")

    @app.route("/", defaults={"path": ""}, methods=METHODS)
    @app.route("/<path:path>", methods=METHODS)
    def proxy(path):
        url = request.path
        if request.query_string:
            url += "?" + request.query_string.decode("utf-8")
        status, headers, content = router.handle(request.method, url, dict(request.headers), request.get_data(),
                client_address=request.remote_addr, client_port=request.environ.get("REMOTE_PORT", 0),
                user_agent=request.headers.get("User-Agent"))
        return Response(content, status=status, headers=headers)

    return app
