# Copyright (C) 2018-2025 The tapbuilder developers
#
# This file is part of tapbuilder
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of tapbuilder, including this file, may be copied, modified,
# propagated, or distributed except according to the terms contained in the
# LICENSE file.


import unittest
from decimal import Decimal

from tapbuilder.errors import ParameterError
from tapbuilder.fees import (
    estimate_hash_commitment_fees,
    estimate_taproot_fee,
    fee_for_vsize,
    to_decimal_rate,
)


class TestFees(unittest.TestCase):
    def test_fee_for_vsize_rounds_up(self):
        self.assertEqual(fee_for_vsize(1, 100), 100)
        self.assertEqual(fee_for_vsize("1.5", 101), 152)
        self.assertEqual(fee_for_vsize(0.1, 15), 2)
        self.assertEqual(fee_for_vsize(Decimal("2.25"), 4), 9)

    def test_invalid_rates(self):
        for rate in (-1, "abc", float("nan"), True):
            with self.assertRaises(ParameterError):
                to_decimal_rate(rate)
        with self.assertRaises(ParameterError):
            fee_for_vsize(1, -1)

    def test_estimate_taproot_fee(self):
        self.assertEqual(estimate_taproot_fee(1, 1, 1, 2, 64, 0), 194)

    def test_estimate_taproot_fee_is_monotonic(self):
        base = estimate_taproot_fee(2, 1, 2, 3, 64, 0)
        self.assertLess(base, estimate_taproot_fee(2, 2, 2, 3, 64, 0))
        self.assertLess(base, estimate_taproot_fee(2, 1, 3, 3, 64, 0))
        self.assertLess(base, estimate_taproot_fee(3, 1, 2, 3, 64, 0))
        self.assertLessEqual(base, estimate_taproot_fee(2, 1, 2, 4, 64, 0))

    def test_hash_commitment_fees(self):
        estimate = estimate_hash_commitment_fees(1000, 1)
        self.assertEqual(estimate.compressed_size, 700)
        self.assertEqual(estimate.outputs_count, 1)
        self.assertEqual(estimate.chunks_count, 9)
        self.assertEqual(estimate.setup_vsize, 213)
        self.assertEqual(estimate.reveal_vsize, 514)
        self.assertEqual(estimate.total_fee, 213 + 514)

    def test_hash_commitment_fees_scale_with_data(self):
        small = estimate_hash_commitment_fees(1000, 5)
        large = estimate_hash_commitment_fees(50000, 5)
        self.assertGreater(large.outputs_count, small.outputs_count)
        self.assertGreater(large.total_fee, small.total_fee)
        with self.assertRaises(ParameterError):
            estimate_hash_commitment_fees(0, 5)


if __name__ == "__main__":
    unittest.main()
