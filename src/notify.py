""" notify.py

License: MIT

Event recording of state-changing calls.

Every call that changes the fleet (instance launch/termination, target registration, health transitions, alarm
transitions, scaling decisions) is wrapped with record_call(). The call is executed, its input, output and
exception are captured and appended to the bounded event history of the NotifyMgr. Exceptions are re-raised
once recorded: recording never hides a failure.
"""
import sys
import json
import traceback
from collections import deque

import misc
import config as Cfg

from aws_xray_sdk.core import xray_recorder

import wflog
log = wflog.logger(__name__)

this = sys.modules[__name__]
this.notify_mgr    = None
this.do_not_notify = False

def record_call(is_success_func, f, *args, **kwargs):
    return record_call_extended({}, is_success_func, f, *args, **kwargs)

def record_call_extended(records_args, is_success_func, f, *args, **kwargs):
    record = {}
    record["Input"] = {
            "*args": list(args),
            "**kwargs": dict(kwargs)
        }

    managed_exception = None
    r                 = None
    xray_recorder.begin_subsegment("notifycall-call:%s" % f.__name__)
    try:
        r =  f(*args, **kwargs)
        record["Output"]  = json.loads(json.dumps(r, default=str))
        record["Success"] = is_success_func(args, kwargs, r) if is_success_func is not None else True
    except Exception as e:
        managed_exception = e
        record["Success"] = False
        record["Except"]  = {
                "Exception": traceback.format_exc(),
                "Reason": str(e)
            }
    finally:
        xray_recorder.end_subsegment()

    prefix              = records_args.get("prefix", None)
    record["EventType"] = f.__name__ if prefix is None else "%s.%s" % (prefix, f.__name__)

    if this.notify_mgr is None or this.do_not_notify:
        log.debug("Do not record event: notify_mgr=%s, do_not_notify=%s" % (this.notify_mgr, this.do_not_notify))
    else:
        this.notify_mgr.add_event(record)

    if managed_exception is not None:
        raise managed_exception
    return r


class NotifyMgr:
    def __init__(self, context):
        global this
        self.context = context
        Cfg.register({
            "notify.event.max_records,Stable": {
                "DefaultValue": 200,
                "Format"      : "PositiveInteger",
                "Description" : """Maximum number of events kept in the event history.

Events are reported by the daemon status endpoint and in published status reports.
                """
            }
        }, ignore_double_definition=True)
        previous    = this.notify_mgr
        self.events = deque(previous.events if previous is not None else [],
                maxlen=Cfg.get_int("notify.event.max_records"))
        this.notify_mgr = self

    def get_prerequisites(self):
        pass

    def add_event(self, record):
        record["EventDate"] = str(self.context.get("now", misc.utc_now()))
        self.events.append(record)
        level = log.NOTICE if record["Success"] else log.WARNING
        log.log(level, "Event '%s' (Success=%s): %s" % (record["EventType"], record["Success"],
            record.get("Output", record.get("Except", {}).get("Reason"))))

    def get_events(self, event_type=None):
        return [e for e in self.events if event_type is None or e["EventType"] == event_type]
