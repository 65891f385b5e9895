from datetime import timedelta

import boto3
import pytest

import notify
import topology
import config as Cfg
from state import StateManager
from cloudwatch import CloudWatch, CloudWatchMetricSource, MetricStore

from conftest import T0


@pytest.fixture
def cw(ctx):
    ctx["o_state"]  = StateManager(ctx)
    ctx["o_notify"] = notify.NotifyMgr(ctx)
    return CloudWatch(ctx, ctx["o_state"])


def configure(ctx, **keys):
    for k, v in keys.items():
        Cfg.set("cloudwatch.alarm.5xx.%s" % k, v)
    ctx["settings"] = topology.FleetSettings.from_config()


def errors(cw, count, date, name="HTTPCode_ELB_5XX_Count"):
    for _ in range(count):
        cw.put_metric(name, 1, date=date)


def evaluate_at(cw, date):
    cw.context["now"] = date
    return cw.evaluate_alarms()


def test_alarm_at_threshold(cw):
    errors(cw, 10, T0 + timedelta(seconds=10))
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "ALARM"


def test_ok_below_threshold(cw):
    errors(cw, 9, T0 + timedelta(seconds=10))
    errors(cw, 1, T0 + timedelta(seconds=300))
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "OK"


def test_elb_and_target_errors_are_summed(cw):
    errors(cw, 5, T0 + timedelta(seconds=10))
    errors(cw, 5, T0 + timedelta(seconds=20), name="HTTPCode_Target_5XX_Count")
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "ALARM"


def test_zero_datapoints_mean_ok(cw):
    for s in range(0, 300, 30):
        cw.put_metric("HTTPCode_ELB_5XX_Count", 0, date=T0 + timedelta(seconds=s))
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "OK"


def test_insufficient_data_without_datapoint(cw):
    assert cw.get_alarm_state() == "INSUFFICIENT_DATA"
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "INSUFFICIENT_DATA"
    assert cw.context["o_notify"].get_events(event_type="alarm_state_transition") == []


def test_alarm_recovers(cw):
    errors(cw, 12, T0 + timedelta(seconds=10))
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "ALARM"
    cw.put_metric("HTTPCode_ELB_5XX_Count", 0, date=T0 + timedelta(seconds=310))
    assert evaluate_at(cw, T0 + timedelta(seconds=600)) == "OK"
    events = cw.context["o_notify"].get_events(event_type="alarm_state_transition")
    assert [e["Output"]["StateValue"] for e in events] == ["ALARM", "OK"]
    assert events[0]["Input"]["**kwargs"]["OldStateValue"] == "INSUFFICIENT_DATA"


def test_period_evaluated_only_once_completed(cw):
    evaluate_at(cw, T0 + timedelta(seconds=300))
    errors(cw, 10, T0 + timedelta(seconds=310))
    assert evaluate_at(cw, T0 + timedelta(seconds=350)) == "INSUFFICIENT_DATA"
    assert evaluate_at(cw, T0 + timedelta(seconds=599)) == "INSUFFICIENT_DATA"
    assert evaluate_at(cw, T0 + timedelta(seconds=600)) == "ALARM"


def test_missed_periods_are_evaluated_in_order(cw):
    evaluate_at(cw, T0 + timedelta(seconds=300))
    errors(cw, 10, T0 + timedelta(seconds=310))
    # Periods [300, 600) and [600, 900) are both evaluated
    assert evaluate_at(cw, T0 + timedelta(seconds=900)) == "INSUFFICIENT_DATA"
    events = cw.context["o_notify"].get_events(event_type="alarm_state_transition")
    assert [e["Output"]["StateValue"] for e in events] == ["ALARM", "INSUFFICIENT_DATA"]


def test_missing_data_after_alarm(cw):
    errors(cw, 10, T0 + timedelta(seconds=10))
    evaluate_at(cw, T0 + timedelta(seconds=300))
    assert evaluate_at(cw, T0 + timedelta(seconds=600)) == "INSUFFICIENT_DATA"


def test_treat_missing_data_ignore(cw):
    configure(cw.context, treat_missing_data="ignore")
    errors(cw, 10, T0 + timedelta(seconds=10))
    evaluate_at(cw, T0 + timedelta(seconds=300))
    assert evaluate_at(cw, T0 + timedelta(seconds=600)) == "ALARM"


def test_treat_missing_data_breaching(cw):
    configure(cw.context, treat_missing_data="breaching")
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "ALARM"


def test_treat_missing_data_not_breaching(cw):
    configure(cw.context, treat_missing_data="notBreaching")
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "OK"


def test_greater_than_threshold(cw):
    configure(cw.context, comparison_operator="GreaterThanThreshold")
    errors(cw, 10, T0 + timedelta(seconds=10))
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "OK"


def test_two_evaluation_periods(cw):
    configure(cw.context, evaluation_periods=2)
    errors(cw, 10, T0 + timedelta(seconds=10))
    assert evaluate_at(cw, T0 + timedelta(seconds=300)) == "OK"
    errors(cw, 10, T0 + timedelta(seconds=310))
    assert evaluate_at(cw, T0 + timedelta(seconds=600)) == "ALARM"
    assert evaluate_at(cw, T0 + timedelta(seconds=900)) == "OK"


def test_alarm_state_is_persisted(cw, tmp_path):
    Cfg.set("app.state_url", "file://%s" % (tmp_path / "state.json"))
    errors(cw, 10, T0 + timedelta(seconds=10))
    evaluate_at(cw, T0 + timedelta(seconds=300))
    cw.o_state.persist()

    o_state = StateManager(cw.context)
    o_state.get_prerequisites()
    assert CloudWatch(cw.context, o_state).get_alarm_state() == "ALARM"


def test_describe_alarms(cw):
    errors(cw, 10, T0 + timedelta(seconds=10))
    evaluate_at(cw, T0 + timedelta(seconds=300))
    alarm = cw.describe_alarms()[0]
    assert alarm["AlarmName"] == "HTTP5XXAlarm"
    assert alarm["Threshold"] == 10
    assert alarm["Period"] == 300
    assert alarm["EvaluationPeriods"] == 1
    assert alarm["ComparisonOperator"] == "GreaterThanOrEqualToThreshold"
    assert alarm["StateValue"] == "ALARM"
    assert alarm["StateUpdatedTimestamp"] == T0 + timedelta(seconds=300)
    assert "1 out of the last 1" in alarm["StateReason"]


def test_metric_store_statistics():
    store = MetricStore()
    for i, v in enumerate([10, 20, 60]):
        store.put("CPUUtilization", v, T0 + timedelta(seconds=i))
    end = T0 + timedelta(seconds=3)
    assert store.get_statistic("CPUUtilization", T0, end, statistic="Average") == 30
    assert store.get_statistic("CPUUtilization", T0, end, statistic="Maximum") == 60
    assert store.get_statistic("CPUUtilization", T0, end, statistic="SampleCount") == 3
    # End bound is excluded
    assert store.get_statistic("CPUUtilization", T0, T0 + timedelta(seconds=2)) == 30
    assert store.get_statistic("RequestCount", T0, end) is None
    store.purge(T0 + timedelta(seconds=2))
    assert store.get_values("CPUUtilization", T0, end) == [60]


def test_internal_fleet_utilization(cw):
    now = cw.context["now"] = T0 + timedelta(seconds=600)
    cw.put_metric("CPUUtilization", 95, date=now - timedelta(seconds=90))
    cw.put_metric("CPUUtilization", 50, date=now - timedelta(seconds=30))
    cw.put_metric("CPUUtilization", 70, date=now)
    assert cw.get_fleet_utilization(["i-1"]) == 60
    cw.context["now"] = now + timedelta(seconds=120)
    assert cw.get_fleet_utilization(["i-1"]) is None


class FakeCloudWatchClient:
    def __init__(self, values=None, fail=False):
        self.values = values if values is not None else {}
        self.fail   = fail
        self.calls  = []

    def get_metric_data(self, MetricDataQueries=None, StartTime=None, EndTime=None, NextToken=None):
        self.calls.append(MetricDataQueries)
        results = []
        for q in MetricDataQueries:
            instance_id = q["MetricStat"]["Metric"]["Dimensions"][0]["Value"]
            results.append({"Id": q["Id"], "Values": self.values.get(instance_id, [])})
        return {"MetricDataResults": results}

    def put_metric_data(self, Namespace=None, MetricData=None):
        if self.fail:
            raise Exception("Throttled")
        self.calls.append((Namespace, MetricData))


def test_cloudwatch_metric_source(ctx):
    ctx["cloudwatch.client"] = FakeCloudWatchClient(values={"i-1": [40.0, 10.0], "i-2": [60.0]})
    source = CloudWatchMetricSource(ctx)
    assert source.get_average_utilization(["i-1", "i-2", "i-3"], T0, T0 + timedelta(minutes=10)) == 50
    query = ctx["cloudwatch.client"].calls[0][0]
    assert query["MetricStat"]["Metric"]["Namespace"] == "AWS/EC2"
    assert query["MetricStat"]["Stat"] == "Average"
    assert source.get_average_utilization(["i-3"], T0, T0 + timedelta(minutes=10)) is None


def test_cloudwatch_cpu_source(ctx):
    ctx["cloudwatch.client"] = FakeCloudWatchClient(values={"i-1": [85.0]})
    Cfg.set("cloudwatch.cpu.source", "cloudwatch")
    cw = CloudWatch(ctx, StateManager(ctx))
    assert cw.get_fleet_utilization(["i-1"]) == 85
    assert cw.get_fleet_utilization([]) is None


def _set_fleet_metrics(cw):
    for name in ["FleetSize", "DesiredCapacity", "HealthyTargetCount", "UnHealthyTargetCount"]:
        cw.set_metric(name, 3)
    cw.set_metric("CPUUtilization", None)


def test_send_metrics_disabled(cw):
    _set_fleet_metrics(cw)
    assert cw.send_metrics() == 0


def test_send_metrics_in_batches(cw):
    client = FakeCloudWatchClient()
    cw.context["cloudwatch.client"] = client
    Cfg.set("cloudwatch.metrics.publish", "1")
    Cfg.set("cloudwatch.metrics.max_update_per_batch", "3")
    _set_fleet_metrics(cw)
    cw.put_metric("RequestCount", 1, date=T0 - timedelta(seconds=10))
    assert cw.send_metrics() == 7
    assert [len(c[1]) for c in client.calls] == [3, 3, 1]
    assert all(c[0] == "WebFleet" for c in client.calls)
    sent = {m["MetricName"]: m for c in client.calls for m in c[1]}
    assert "CPUUtilization" not in sent
    assert sent["RequestCount"]["Value"] == 1
    assert sent["HTTPCode_ELB_5XX_Count"]["Value"] == 0
    assert sent["FleetSize"]["Dimensions"] == [{"Name": "GroupName", "Value": "test-fleet"}]


def test_send_metrics_exclusion_and_failure(cw):
    cw.context["cloudwatch.client"] = FakeCloudWatchClient(fail=True)
    Cfg.set("cloudwatch.metrics.publish", "1")
    _set_fleet_metrics(cw)
    assert cw.send_metrics() == 0

    cw.context["cloudwatch.client"] = FakeCloudWatchClient()
    Cfg.set("cloudwatch.metrics.excluded", "HTTPCode_.*")
    assert cw.send_metrics() == 5


def test_send_metrics_to_cloudwatch(mocked_aws, cw):
    Cfg.set("cloudwatch.metrics.publish", "1")
    cw.context["now"] = T0 + timedelta(seconds=60)
    _set_fleet_metrics(cw)
    assert cw.send_metrics() == 7
    client  = boto3.client("cloudwatch", region_name="us-east-1")
    metrics = client.list_metrics(Namespace="WebFleet")["Metrics"]
    assert "HealthyTargetCount" in {m["MetricName"] for m in metrics}
