#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import queue
import unittest

import chibios_dbg.debugger as debugger
import chibios_dbg.kernel as kernel
from chibios_dbg.snapshot import MISSING, TraceType, ReadyPayload, SwitchPayload, IsrPayload, \
    HaltPayload, UserPayload
from chibios_dbg.term import MsgLevel
from dbg_testcase import *

T_MAIN = 0x20000800
T_IDLE = 0x20000A00


class TestTraceBuffer(DbgTestCase):
    """
    Reading the kernel trace ring buffer.
    """

    def __init__(self, methodName='runTest'):
        super().__init__(methodName)

    def build_target(self, target):
        target.add_thread(T_MAIN, name='main')
        target.add_thread(T_IDLE, name='idle')
        target.init_trace(4)

    def test_not_found(self):
        del self.target.globals['ch.trace_buffer.size']
        with self.assertRaises(kernel.TraceBufferNotFoundError):
            self.kernel.read_trace()

    def test_empty(self):
        self.assertEqual(self.kernel.read_trace(), {})

    def test_partially_filled(self):
        self.target.add_trace_event(TraceType.READY, state=0, rtstamp=1000, time=5,
                                    u_rdy_tp=T_IDLE, u_rdy_msg=0)
        self.target.add_trace_event(TraceType.SWITCH, state=1, rtstamp=1200, time=6,
                                    u_sw_ntp=T_IDLE, u_sw_wtobjp=0x20003000)

        events = self.kernel.read_trace()
        # Two unused slots are skipped but take up indices -3 and -2.
        self.assertEqual(list(events.keys()), [-1, 0])

        ready = events[-1]
        self.assertEqual(ready.index, -1)
        self.assertEqual(ready.type, TraceType.READY)
        self.assertEqual(ready.state_s, 'READY')
        self.assertEqual(ready.rtstamp, 1000)
        self.assertEqual(ready.time, 5)
        self.assertEqual(ready.payload, ReadyPayload(tp=T_IDLE, msg=0))

        switch = events[0]
        self.assertEqual(switch.state_s, 'CURRENT')
        self.assertEqual(switch.payload, SwitchPayload(ntp=T_IDLE, wtobjp=0x20003000))

    def test_wrapped(self):
        for i in range(6):
            self.target.add_trace_event(TraceType.USER, rtstamp=i, u_user_up1=i, u_user_up2=i * 2)

        events = self.kernel.read_trace()
        self.assertEqual(list(events.keys()), [-3, -2, -1, 0])
        # Oldest surviving record comes first.
        self.assertEqual([ev.rtstamp for ev in events.values()], [2, 3, 4, 5])
        self.assertEqual(events[0].payload, UserPayload(up1=5, up2=10))

    def test_isr_and_halt_payloads(self):
        isr_name = self.target.add_string('SysTick')
        reason = self.target.add_string('stack overflow')
        self.target.add_trace_event(TraceType.ISR_ENTER, u_isr_name=isr_name)
        self.target.add_trace_event(TraceType.ISR_LEAVE, u_isr_name=isr_name)
        self.target.add_trace_event(TraceType.HALT, u_halt_reason=reason)

        events = self.kernel.read_trace()
        self.assertEqual(events[-2].payload, IsrPayload(name='SysTick'))
        self.assertEqual(events[-1].type, TraceType.ISR_LEAVE)
        self.assertEqual(events[0].payload, HaltPayload(reason='stack overflow'))

    def test_isr_name_unreadable(self):
        self.target.add_trace_event(TraceType.ISR_ENTER, u_isr_name=0x30000000)
        self.assertEqual(self.kernel.read_trace()[0].payload, IsrPayload(name=MISSING))

    def test_unknown_type(self):
        print_q = queue.Queue()
        dbg = debugger.Debugger(self.target, print_q, force_config=TEST_CONFIG)
        self.target.add_trace_event(9, rtstamp=77)

        events = dbg.kernel().read_trace()
        self.assertEqual(events[0].type, 9)
        self.assertIsNone(events[0].payload)
        self.assertEqual(events[0].rtstamp, 77)

        (msg, level) = print_q.get(block=False)
        self.assertEqual(level, MsgLevel.WARN)
        self.assertIn('Unknown trace record type 9', msg)

    def test_mandatory_field_missing(self):
        self.target.add_trace_event(TraceType.READY, u_rdy_tp=T_IDLE)  # no u.rdy.msg
        with self.assertRaises(kernel.FieldNotFoundError):
            self.kernel.read_trace()


if __name__ == "__main__":
    unittest.main(verbosity=2)
