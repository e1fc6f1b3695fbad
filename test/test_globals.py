#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import unittest

import chibios_dbg.kernel as kernel
from chibios_dbg.snapshot import GLOBAL_KEYS, NOT_ENABLED
from dbg_testcase import *

T_MAIN = 0x20000800


class TestGlobals(DbgTestCase):
    """
    Reading the kernel's global state variables.
    """

    def __init__(self, methodName='runTest'):
        super().__init__(methodName)

    def build_target(self, target):
        target.add_thread(T_MAIN, name='main')
        target.globals['ch.vtlist.delta'] = 20

    def _enable_all(self):
        g = self.target.globals
        g['ch.vtlist.systime'] = 123456
        g['ch.vtlist.lasttime'] = 123400
        g['ch.rlist.preempt'] = 50
        g['ch.dbg.panic_msg'] = 0
        g['ch.dbg.isr_cnt'] = 0
        g['ch.dbg.lock_cnt'] = 1

    def test_all_enabled(self):
        self._enable_all()
        global_vals = self.kernel.read_globals()
        self.assertEqual(global_vals['vt_systime'], 123456)
        self.assertEqual(global_vals['vt_lasttime'], 123400)
        self.assertEqual(global_vals['r_current'], '0x20000800 "main"')
        self.assertEqual(global_vals['r_preempt'], 50)
        self.assertEqual(global_vals['dbg_panic_msg'], '<NULL>')
        self.assertEqual(global_vals['dbg_isr_cnt'], 'not within ISR')
        self.assertEqual(global_vals['dbg_lock_cnt'], 'within lock')

    def test_minimal_kernel(self):
        global_vals = self.kernel.read_globals()
        self.assertEqual(list(global_vals.keys()), GLOBAL_KEYS)
        self.assertEqual(global_vals['vt_systime'], NOT_ENABLED)
        # Without a lasttime field, the head delta stands in for it.
        self.assertEqual(global_vals['vt_lasttime'], 20)
        self.assertEqual(global_vals['r_current'], '0x20000800 "main"')
        self.assertEqual(global_vals['r_preempt'], NOT_ENABLED)
        self.assertEqual(global_vals['dbg_panic_msg'], NOT_ENABLED)
        self.assertEqual(global_vals['dbg_isr_cnt'], NOT_ENABLED)
        self.assertEqual(global_vals['dbg_lock_cnt'], NOT_ENABLED)

    def test_panic_message(self):
        self._enable_all()
        self.target.globals['ch.dbg.panic_msg'] = self.target.add_string('SV#4')
        self.target.globals['ch.dbg.isr_cnt'] = 2
        self.target.globals['ch.dbg.lock_cnt'] = 0

        global_vals = self.kernel.read_globals()
        self.assertEqual(global_vals['dbg_panic_msg'], 'SV#4')
        self.assertEqual(global_vals['dbg_isr_cnt'], 'within ISR')
        self.assertEqual(global_vals['dbg_lock_cnt'], 'not within lock')

    def test_current_thread_without_name(self):
        self.target.objects[T_MAIN]['name'] = 0
        self.assertEqual(self.kernel.read_globals()['r_current'], '0x20000800 "<no name>"')

    def test_read_only(self):
        global_vals = self.kernel.read_globals()
        with self.assertRaises(TypeError):
            global_vals['vt_systime'] = 0

    def test_not_found(self):
        del self.target.globals['ch.vtlist.delta']
        with self.assertRaises(kernel.GlobalStateNotFoundError):
            self.kernel.read_globals()


if __name__ == "__main__":
    unittest.main(verbosity=2)
