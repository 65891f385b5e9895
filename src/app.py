import os
import sys

import config
import misc
import ec2
import fleet_schedule
import cloudwatch
import targetgroup
import accesslog
import router
import notify
import state
import topology
import debug as Dbg
import config as Cfg

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)
log.debug("App started.")

# Import environment variables
ctx = {"now": misc.utc_now()}
for env in os.environ:
    ctx[env] = os.getenv(env)
if "GroupName" not in ctx:
    ctx["GroupName"] = "WebFleet"


@xray_recorder.capture(name="app.init")
def init(context=None, with_predefined_configuration=True, provisioner=None, prober=None, forwarder=None,
        metric_store=None, metric_source=None, clock=None):
    """ Setup the configuration and the management objects of the control plane.

    Management objects keep the in-memory view of the fleet (target health, metric stream...) so init() is called
    once per process and main_handler() once per control period.
    """
    if context is None: context = ctx
    context.setdefault("GroupName", "WebFleet")
    config.init(context, with_predefined_configuration=with_predefined_configuration)
    Cfg.register({
           "app.run_period,Stable" : {
               "DefaultValue": "seconds=10",
               "Format"      : "Duration",
               "Description" : """Period of the control loop (health checks, scaling, alarm evaluation).

Must stay lower than the health check interval to probe targets on time.
               """
           },
           "app.default_ttl" : "300",
           "app.disable,Stable": {
                "DefaultValue": 0,
                "Format": "Bool",
                "Description": """Flag to disable the control loop.

While disabled, the router keeps serving the targets known as healthy but no health check, scaling or alarm
evaluation is performed."""
               },
           "app.report_url": "",
        })
    topology.register_config()
    context["settings"] = topology.FleetSettings.from_config()

    log.debug("Setup management objects.")
    context["o_state"]          = state.StateManager(context)
    context["o_notify"]         = notify.NotifyMgr(context)
    context["o_ec2"]            = ec2.EC2(context, context["o_state"], provisioner=provisioner)
    context["o_targetgroup"]    = targetgroup.ManagedTargetGroup(context, context["o_ec2"], prober=prober)
    context["o_cloudwatch"]     = cloudwatch.CloudWatch(context, context["o_state"], metric_store=metric_store,
            metric_source=metric_source)
    context["o_fleet_schedule"] = fleet_schedule.FleetSchedule(context, context["o_ec2"], context["o_targetgroup"],
            context["o_cloudwatch"])
    context["o_accesslog"]      = accesslog.AccessLogSink(context)
    context["o_router"]         = router.Router(context, context["o_targetgroup"], context["o_cloudwatch"],
            context["o_accesslog"], forwarder=forwarder, clock=clock)
    return context


@xray_recorder.capture()
def main_handler(context=None, now=None):
    """ Run one control pass.

    :param context: Application context built by init() (module context by default)
    :param now:     Date of the pass (current date by default)
    """
    if context is None: context = ctx
    if "o_ec2" not in context:
        init(context)
    context["now"]      = now if now is not None else misc.utc_now()
    context["settings"] = topology.FleetSettings.from_config()

    if Cfg.get_int("app.disable") != 0:
        log.warning("Application disabled due to 'app.disable' key")
        return

    log.debug("Load prerequisites.")
    misc.load_prerequisites(context, ["o_state", "o_notify", "o_ec2", "o_targetgroup", "o_cloudwatch",
        "o_fleet_schedule"])

    Cfg.dump()

    log.debug("Main - manage_targetgroup()")
    context["o_targetgroup"].manage_targetgroup()
    log.debug("Main - schedule_instances()")
    context["o_fleet_schedule"].schedule_instances()
    log.debug("Main - evaluate_alarms()")
    context["o_cloudwatch"].evaluate_alarms()
    log.debug("Main - send_metrics()")
    context["o_cloudwatch"].send_metrics()

    # Remember 'now' as the last execution date
    context["o_state"].set_state("main.last_call_date", context["now"], TTL=Cfg.get_duration_secs("app.default_ttl"))
    context["o_state"].persist()

    report_url = Cfg.get("app.report_url")
    if report_url != "":
        Dbg.publish_report(context, report_url)
    log.log(log.NOTICE, "Normal end.")


if __name__ == '__main__':
    # One control pass, then print the status report
    main_handler()
    print(Dbg.pprint(Dbg.status_report(ctx)))
    sys.exit(0)
