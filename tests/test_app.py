from collections import Counter
from datetime import timedelta

import yaml

import router
import debug as Dbg

from conftest import T0, ENDPOINTS


def send_requests(h, count):
    client = router.create_app(h.context["o_router"]).test_client()
    return [client.get("/").status_code for _ in range(count)]


def alarm_state(h):
    return h.cloudwatch.describe_alarms()[0]["StateValue"]


def test_traffic_is_spread_and_alarm_ok(converged):
    h = converged
    assert set(send_requests(h, 30)) == {200}
    assert set(Counter(h.forwarder.calls).values()) == {10}
    assert sorted(Counter(h.forwarder.calls)) == sorted(h.active_ids())
    h.advance(210)
    assert alarm_state(h) == "INSUFFICIENT_DATA"
    h.advance(30)
    assert h.now == T0 + timedelta(minutes=5)
    assert alarm_state(h) == "OK"


def test_server_errors_trigger_the_alarm(converged):
    h = converged
    h.forwarder.behaviors[sorted(h.active_ids())[0]] = 503
    statuses = send_requests(h, 30)
    assert statuses.count(503) == 10
    h.advance(240)
    assert alarm_state(h) == "ALARM"
    events = h.context["o_notify"].get_events(event_type="alarm_state_transition")
    assert events[-1]["Input"]["**kwargs"]["NewStateValue"] == "ALARM"

    # Errors stop: the next period recovers
    h.forwarder.behaviors.clear()
    h.advance(30, on_pass=lambda h: send_requests(h, 1))
    h.advance(270)
    assert alarm_state(h) == "OK"


def test_failing_member_is_replaced_and_traffic_continues(converged):
    h      = converged
    failed = sorted(h.active_ids())[0]
    h.prober.failing.add(h.address_of(failed))
    h.forwarder.behaviors[failed] = 500
    h.advance(90)
    h.forwarder.calls.clear()
    assert set(send_requests(h, 6)) == {200}
    assert failed not in h.forwarder.calls
    h.advance(300)
    assert failed not in h.active_ids()
    assert len(h.healthy_ids()) == 3


def test_disabled_control_loop(harness):
    h = harness(**{"app.disable": "1"})
    h.run_pass()
    assert h.ec2.get_fleet_size() == 0


def test_state_survives_restart(harness, tmp_path):
    state_url = "file://%s" % (tmp_path / "state.json")
    h = harness(**{"app.state_url": state_url})
    h.run_pass()
    h.ec2.set_desired_capacity(5)
    h.context["o_state"].persist()
    h.advance(30)
    assert h.ec2.get_fleet_size() == 5

    restarted = harness(**{"app.state_url": state_url})
    restarted.context["now"] = h.now
    restarted.run_pass()
    assert restarted.ec2.get_desired_capacity() == 5


def test_status_report(converged):
    report = Dbg.status_report(converged.context)
    assert report["GroupName"] == "test-fleet"
    assert report["Fleet"]["DesiredCapacity"] == 3
    assert len(report["TargetHealthDescriptions"]) == 3
    assert report["Alarms"][0]["AlarmName"] == "HTTP5XXAlarm"
    assert "provisioner_launch" in {e["EventType"] for e in report["Events"]}


def test_report_is_published(harness, tmp_path):
    h = harness(**{"app.report_url": "file://%s" % tmp_path})
    h.run_pass()
    reports = list(tmp_path.glob("*_report.yaml"))
    assert len(reports) == 1
    report = yaml.safe_load(reports[0].read_text())
    assert report["Fleet"]["DesiredCapacity"] == 3


def test_alarm_evaluated_while_provisioning_fails(harness):
    h = harness(**{"fleet.static.endpoints": ";".join(ENDPOINTS[:3])})
    h.run_pass()
    h.advance(60)
    h.ec2.set_desired_capacity(4)
    for _ in range(10):
        h.cloudwatch.put_metric("HTTPCode_ELB_5XX_Count", 1, date=h.now)
    h.advance(240)
    assert alarm_state(h) == "ALARM"
    assert h.ec2.get_fleet_size() == 3
    assert h.context["o_state"].get_state_date("main.last_call_date") == T0 + timedelta(minutes=5)
    failed = [e for e in h.context["o_notify"].get_events(event_type="provisioner_launch") if not e["Success"]]
    assert len(failed) == 8
    assert "No free endpoint" in failed[-1]["Except"]["Reason"]
