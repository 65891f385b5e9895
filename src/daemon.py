import sys
import time
import argparse
import threading

from flask import Flask, jsonify, request

import misc
import router
import topology
import debug as Dbg
import config as Cfg

import wflog
log = wflog.logger(__name__)
log.debug("Starting daemon...")

import app


# Metrics the fleet members may push to the in-process stream; the router owns all the others
PUSHED_METRICS = ["CPUUtilization"]


def register_config():
    Cfg.register({
        "daemon.admin_bind_address,Stable": {
            "DefaultValue": "127.0.0.1",
            "Format"      : "String",
            "Description" : """Bind address of the control plane endpoints ('/webfleet/status' and '/webfleet/metrics/<name>').

These endpoints are served apart from the listener so that clients of the fleet can't reach them.
            """
        },
        "daemon.admin_port": 8081,
    }, ignore_double_definition=True)


def get_period():
    default = 10
    try:
        return max(1, Cfg.get_duration_secs("app.run_period"))
    except Cfg.ConfigurationError:
        log.exception("Failed to parse 'app.run_period'")
        return default


def create_admin_app(context):
    """ Control plane application: status report and metric push endpoints under '/webfleet/'.
    """
    admin_app = Flask("webfleet-admin")

    @admin_app.route("/webfleet/status", methods=["GET"])
    def status():
        return jsonify(Dbg.status_report(context))

    @admin_app.route("/webfleet/metrics/<name>", methods=["PUT", "POST"])
    def put_metric(name):
        if name not in PUSHED_METRICS:
            return jsonify({"Error": "Metric '%s' can't be pushed (accepted: %s)" % (name, PUSHED_METRICS)}), 400
        payload = request.get_json(silent=True)
        try:
            value = float(payload["Value"])
        except (KeyError, TypeError, ValueError):
            return jsonify({"Error": "Expected a JSON body like {\"Value\": <number>}"}), 400
        context["o_cloudwatch"].put_metric(name, value, date=misc.utc_now())
        return jsonify({"MetricName": name, "Value": value})

    return admin_app


def eventloop(context, max_iter=None, sleep=time.sleep):
    """ Run app.main_handler() every 'app.run_period'. A failing pass is logged and the loop goes on.
    """
    last_call = misc.epoch()
    while max_iter is None or max_iter > 0:
        if max_iter is not None:
            max_iter -= 1

        period = get_period()
        now    = misc.utc_now()
        if (now - last_call).total_seconds() >= period:
            try:
                app.main_handler(context)
                execution_time = (misc.utc_now() - now).total_seconds()
                log.info("main_handler() took %s seconds" % execution_time)
                if execution_time >= period:
                    log.warning("main_handler() execution time exceeds configured 'app.run_period' (=%s)! Consider increase this value!" % period)
            except Exception:
                log.exception("Got Exception while calling app.main_handler()!")
            last_call = now

        delta = period - (misc.utc_now() - last_call).total_seconds()
        sleep(max(0.5, delta))


def main(argv=None):
    parser = argparse.ArgumentParser(description="WebFleet load balancer and fleet controller")
    parser.add_argument('--config', help="Semi-column separated list of configuration URLs", type=str, default=None)
    parser.add_argument('--port', help="Listener port (overrides 'listener.port')", type=int, default=None)
    parser.add_argument('--bind-address', help="Listener bind address (overrides 'listener.bind_address')", type=str, default=None)
    parser.add_argument('--once', help="Run a single control pass, print the status report and exit", action="store_true")
    args = parser.parse_args(argv)

    ctx = app.ctx
    if args.config is not None:
        ctx["WEBFLEET_CONFIG_URLS"] = args.config
    app.init(ctx)
    register_config()
    if args.port is not None:
        Cfg.set("listener.port", args.port)
    if args.bind_address is not None:
        Cfg.set("listener.bind_address", args.bind_address)
    ctx["settings"] = topology.FleetSettings.from_config()

    if args.once:
        app.main_handler(ctx)
        print(Dbg.pprint(Dbg.status_report(ctx)))
        return 0

    ctx["o_accesslog"].start()
    loop = threading.Thread(target=eventloop, args=(ctx,), name="control-loop", daemon=True)
    loop.start()
    admin_address = Cfg.get("daemon.admin_bind_address")
    admin_port    = Cfg.get_int("daemon.admin_port")
    log.info("Control plane endpoints on %s:%s..." % (admin_address, admin_port))
    admin = threading.Thread(target=create_admin_app(ctx).run, name="admin",
            kwargs={"host": admin_address, "port": admin_port, "threaded": True}, daemon=True)
    admin.start()

    settings = ctx["settings"]
    log.info("Listening on %s:%s..." % (settings.bind_address, settings.listener_port))
    try:
        router.create_app(ctx["o_router"]).run(host=settings.bind_address, port=settings.listener_port, threaded=True)
    finally:
        ctx["o_accesslog"].stop()
        ctx["o_state"].persist()
    return 0


if __name__ == '__main__':
    sys.exit(main())
