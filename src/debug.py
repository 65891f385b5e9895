import json
import yaml

import misc

import wflog
log = wflog.logger(__name__)

def pprint(json_obj):
    return json.dumps(json_obj, indent=4, sort_keys=True, default=str)


def status_report(ctx):
    """ Build a status report of the control plane: fleet, targets, alarm and recent events.
    """
    report = {
        "GenerationDate": ctx["now"],
        "GroupName"     : ctx.get("GroupName"),
    }
    o_ec2 = ctx.get("o_ec2")
    if o_ec2 is not None:
        report["Fleet"] = {
            "DesiredCapacity": o_ec2.get_desired_capacity(),
            "Instances"      : o_ec2.get_instances(),
        }
    o_targetgroup = ctx.get("o_targetgroup")
    if o_targetgroup is not None:
        report["TargetHealthDescriptions"] = o_targetgroup.describe_target_health()
    o_cloudwatch = ctx.get("o_cloudwatch")
    if o_cloudwatch is not None:
        report["Alarms"] = o_cloudwatch.describe_alarms()
    o_notify = ctx.get("o_notify")
    if o_notify is not None:
        report["Events"] = o_notify.get_events()
    return json.loads(pprint(report))


def publish_report(ctx, url, reportname="report"):
    """ Upload the YAML status report to an 's3://' or 'file://' url. Best-effort.
    """
    report = status_report(ctx)
    n      = str(ctx["now"]).replace(" ", "_")
    target = "%s/%s_%s.yaml" % (url.rstrip("/"), n, reportname)
    if not misc.put_url(target, yaml.safe_dump(report)):
        log.error("Failed to publish report to '%s'!" % target)
        return False
    log.info("Uploaded '%s'." % target)
    return True
