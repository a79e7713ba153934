"""
Unit tests for the Compartment class in the laser_compartments.compartment module.

The tests wire small graphs by hand (without CompartmentModel) and cover graph assembly,
sizing, the per-iteration update, conservation and violation handling.
"""

import unittest
from unittest import mock

import numpy as np
import pytest

from laser_compartments import Compartment
from laser_compartments import DistributionConstant
from laser_compartments import DistributionFunc
from laser_compartments import DistributionMath
from laser_compartments import Exponential
from laser_compartments import FormulaError
from laser_compartments import Gamma
from laser_compartments import ModelingError
from laser_compartments import Violation
from laser_compartments.compartment import NEGATIVE_TOLERANCE
from laser_compartments.compartment import VIOLATION_NEGATIVE_OUTFLOW
from laser_compartments.compartment import VIOLATION_NEGATIVE_POPULATION
from laser_compartments.compartment import VIOLATION_OVERFLOW
from laser_compartments.compartment import VIOLATION_WEIGHTS
from laser_compartments.compartment import _age_buckets


def connect(source, target, distribution, weight=1.0):
    source.add_out_compartment(target)
    source.add_out_compartment_name(target.name)
    source.add_out_distribution(distribution)
    source.add_out_weight(weight)
    target.add_in_compartment(source)


def prepare(*compartments):
    for compartment in compartments:
        compartment.set_length_sub_compartment()
        compartment.set_out_values()
    return {c.name: c for c in compartments}


def run(compartments, ticks, names=(), values=(), order=None):
    order = order if order is not None else list(compartments.values())
    for tick in range(1, ticks + 1):
        for compartment in order:
            compartment.update_compartment(tick, list(names), list(values), compartments)


class TestCompartmentWiring(unittest.TestCase):
    def setUp(self):
        Compartment.times_follow_up = 10

    def test_init(self):
        c = Compartment("S", 1000.0)
        assert c.name == "S"
        assert np.array_equal(c.total, [1000.0])
        assert np.array_equal(c.sub_compartments, [1000.0])
        assert c.iteration == 0
        assert c.out_names == []
        assert c.in_compartments == []

    def test_init_bad_values(self):
        with pytest.raises(ValueError, match="non-empty string"):
            Compartment("", 1.0)
        with pytest.raises(ValueError, match="non-negative"):
            Compartment("S", -1.0)
        with pytest.raises(ValueError, match="non-negative"):
            Compartment("S", np.inf)

    def test_parallel_edges(self):
        s, i, r = Compartment("S", 10), Compartment("I", 0), Compartment("R", 0)
        dist_i, dist_r = Exponential(0.5), DistributionConstant(0.1)
        connect(s, i, dist_i, 0.3)
        connect(s, r, dist_r, 0.7)
        assert s.out_compartments == ["I", "R"]
        assert s.out_names == ["I", "R"]
        assert s.out_distributions == [dist_i, dist_r]
        assert s.out_weights == [0.3, 0.7]
        assert i.in_compartments == ["S"]
        assert s.is_out_comp_added("R")
        assert not s.is_out_comp_added("D")
        assert s.find_out_comp_position("R") == 1

    def test_add_in_compartment_once(self):
        s, i = Compartment("S", 10), Compartment("I", 0)
        i.add_in_compartment(s)
        i.add_in_compartment("S")
        assert i.in_compartments == ["S"]

    def test_duplicate_out_name(self):
        s, i = Compartment("S", 10), Compartment("I", 0)
        connect(s, i, DistributionConstant(0.1))
        with pytest.raises(ValueError, match="already has an out-edge named 'I'"):
            s.add_out_compartment_name("I")

    def test_bad_weight(self):
        with pytest.raises(ValueError, match="weight must be in"):
            Compartment("S", 1).add_out_weight(1.5)

    def test_bad_distribution(self):
        with pytest.raises(ValueError, match="Expected a Distribution"):
            Compartment("S", 1).add_out_distribution(0.1)

    def test_find_missing(self):
        with pytest.raises(ValueError, match="has no out-edge named 'X'"):
            Compartment("S", 1).find_out_comp_position("X")

    def test_edit_out_distribution(self):
        s, i = Compartment("S", 10), Compartment("I", 0)
        connect(s, i, DistributionConstant(0.1))
        replacement = Gamma(2.0, 3.0)
        s.edit_out_distribution("I", replacement)
        assert s.out_distributions == [replacement]

    def test_edit_missing_edge(self):
        s = Compartment("S", 10)
        with pytest.raises(ValueError, match="has no out-edge named 'I'"):
            s.edit_out_distribution("I", DistributionConstant(0.1))

    def test_misaligned_edges(self):
        s, i = Compartment("S", 10), Compartment("I", 0)
        s.add_out_compartment(i)
        s.add_out_compartment_name("I")
        with pytest.raises(ValueError, match="misaligned"):
            s.set_length_sub_compartment()

    def test_no_edits_after_sizing(self):
        s, i = Compartment("S", 10), Compartment("I", 0)
        connect(s, i, DistributionConstant(0.1))
        prepare(s, i)
        with pytest.raises(RuntimeError, match="can no longer be edited"):
            s.edit_out_distribution("I", DistributionConstant(0.2))
        with pytest.raises(RuntimeError, match="can no longer be edited"):
            s.add_out_compartment(i)
        with pytest.raises(RuntimeError, match="already been sized"):
            s.set_length_sub_compartment()


class TestCompartmentSizing(unittest.TestCase):
    def setUp(self):
        Compartment.times_follow_up = 10

    def test_length_from_longest_table(self):
        s, e, i, r = Compartment("S", 100), Compartment("E", 0), Compartment("I", 0), Compartment("R", 0)
        short, long = Exponential(1.0), Gamma(4.0, 5.0)
        connect(s, e, short, 0.5)
        connect(s, i, long, 0.5)
        connect(s, r, DistributionConstant(0.01), 0.0)
        s.set_length_sub_compartment()
        buckets = s.sub_compartments
        assert len(buckets) == len(long)
        assert buckets[0] == 100.0
        assert np.all(buckets[1:] == 0.0)

    def test_math_and_constant_do_not_set_length(self):
        s, i, r = Compartment("S", 100), Compartment("I", 0), Compartment("R", 0)
        connect(s, i, DistributionMath("0.1 * S"))
        connect(s, r, DistributionConstant(0.01))
        s.set_length_sub_compartment()
        assert len(s.sub_compartments) == 1

    def test_sink_has_one_bucket(self):
        r = Compartment("R", 5)
        r.set_length_sub_compartment()
        assert np.array_equal(r.sub_compartments, [5.0])

    def test_out_values_shape(self):
        s, i, r = Compartment("S", 100), Compartment("I", 0), Compartment("R", 0)
        connect(s, i, Gamma(2.0, 3.0))
        connect(s, r, DistributionConstant(0.01))
        prepare(s, i, r)
        assert s.out_totals.shape == (2, 11)
        assert s.out_sub_compartments.shape == (2, len(s.sub_compartments))
        assert not s.out_totals.any()

    def test_out_values_requires_length(self):
        with pytest.raises(RuntimeError, match="before set_out_values"):
            Compartment("S", 1).set_out_values()

    def test_update_requires_initialization(self):
        s = Compartment("S", 1)
        with pytest.raises(RuntimeError, match="not initialized"):
            s.update_compartment(1, [], [], {"S": s})


class TestCompartmentUpdate(unittest.TestCase):
    def setUp(self):
        Compartment.times_follow_up = 5

    def test_constant_rate_scenario(self):
        a, d = Compartment("A", 1000.0), Compartment("D", 0.0)
        connect(a, d, DistributionConstant(0.1))
        comps = prepare(a, d)
        run(comps, 5)
        assert np.allclose(a.total, [1000.0, 900.0, 810.0, 729.0, 656.1, 590.49])
        assert np.allclose(a.total + d.total, 1000.0)
        assert np.allclose(a.out_totals[0], [0.0, 100.0, 90.0, 81.0, 72.9, 65.61])

    def test_isolated_compartment_is_conserved(self):
        Compartment.times_follow_up = 50
        c = Compartment("C", 123.456)
        comps = prepare(c)
        run(comps, 50)
        assert np.all(c.total == c.total[0])
        assert len(c.total) == 51

    def test_cdf_chain_conserves_population(self):
        Compartment.times_follow_up = 40
        a, b = Compartment("A", 1000.0), Compartment("B", 0.0)
        connect(a, b, Gamma(2.0, 3.0))
        comps = prepare(a, b)
        run(comps, 40)
        assert np.allclose(a.total + b.total, 1000.0)
        assert a.total[-1] < a.total[0]
        assert np.all(np.diff(b.total) >= 0.0)

    def test_residence_time_ageing(self):
        # hazards 1/4, 1/3, 1/2, 1: a cohort leaves one quarter per step
        Compartment.times_follow_up = 5
        a, b = Compartment("A", 100.0), Compartment("B", 0.0)
        connect(a, b, DistributionFunc(lambda x: np.clip(x / 4.0, 0.0, 1.0)))
        comps = prepare(a, b)
        run(comps, 1)
        assert np.allclose(a.sub_compartments, [0.0, 75.0, 0.0, 0.0])
        run_from(comps, 2, 4)
        assert np.allclose(a.total, [100.0, 75.0, 50.0, 25.0, 0.0])
        assert np.allclose(b.total, [0.0, 25.0, 50.0, 75.0, 100.0])

    def test_inflow_lands_in_bucket_zero(self):
        Compartment.times_follow_up = 3
        a, b, c = Compartment("A", 100.0), Compartment("B", 0.0), Compartment("C", 0.0)
        connect(a, b, DistributionConstant(0.5))
        connect(b, c, Gamma(2.0, 3.0))
        comps = prepare(a, b, c)
        run(comps, 1)
        buckets = b.sub_compartments
        assert buckets[0] == pytest.approx(50.0)
        assert np.all(buckets[1:] == 0.0)

    def test_weight_partition(self):
        Compartment.times_follow_up = 8
        s, i, r = Compartment("S", 1000.0), Compartment("I", 0.0), Compartment("R", 0.0)
        connect(s, i, Gamma(2.0, 3.0), 0.3)
        connect(s, r, Gamma(2.0, 3.0), 0.7)
        comps = prepare(s, i, r)
        for tick in range(1, 9):
            for c in comps.values():
                c.update_compartment(tick, [], [], comps)
            out = s.out_sub_compartments
            assert np.allclose(7.0 * out[0], 3.0 * out[1])
        totals = s.out_totals
        assert np.allclose(7.0 * totals[0], 3.0 * totals[1])
        assert np.allclose(s.total + i.total + r.total, 1000.0)

    def test_math_edge_uses_previous_iteration(self):
        Compartment.times_follow_up = 3
        s, i = Compartment("S", 990.0), Compartment("I", 10.0)
        connect(s, i, DistributionMath("beta * S * I / N"))
        comps = prepare(s, i)
        run(comps, 1, ["beta", "N"], [0.4, 1000.0])
        assert s.out_totals[0, 1] == pytest.approx(3.96)
        assert s.total[1] == pytest.approx(990.0 - 3.96)
        assert i.total[1] == pytest.approx(10.0 + 3.96)
        run_from(comps, 2, 2, ["beta", "N"], [0.4, 1000.0])
        assert s.out_totals[0, 2] == pytest.approx(0.4 * s.total[1] * i.total[1] / 1000.0)

    def test_math_edge_apportioned_by_bucket_share(self):
        Compartment.times_follow_up = 3
        src, a, b = Compartment("SRC", 100.0), Compartment("A", 0.0), Compartment("B", 0.0)
        connect(src, a, DistributionConstant(0.5))
        connect(a, b, Gamma(2.0, 3.0), 0.0)
        a.add_out_compartment("X")
        a.add_out_compartment_name("X")
        a.add_out_distribution(DistributionMath("10"))
        a.add_out_weight(1.0)
        x = Compartment("X", 0.0)
        x.add_in_compartment(a)
        comps = prepare(src, a, b, x)
        run(comps, 2)
        # A held 50 in bucket 0 going into tick 2 and gained 25 afterwards
        assert a.out_sub_compartments[1, 0] == pytest.approx(10.0)
        run_from(comps, 3, 3)
        before = np.array([25.0, 40.0])
        assert np.allclose(a.out_sub_compartments[1, :2], 10.0 * before / before.sum())

    def test_formula_error_propagates(self):
        s, i = Compartment("S", 100.0), Compartment("I", 0.0)
        connect(s, i, DistributionMath("beta * X"))
        comps = prepare(s, i)
        with pytest.raises(FormulaError, match="unknown name 'X'"):
            s.update_compartment(1, ["beta"], [0.1], comps)

    def test_iteration_sequence(self):
        c = Compartment("C", 1.0)
        comps = prepare(c)
        with pytest.raises(RuntimeError, match="expected iteration 1, got 2"):
            c.update_compartment(2, [], [], comps)
        c.update_compartment(1, [], [], comps)
        with pytest.raises(RuntimeError, match="expected iteration 2, got 1"):
            c.update_compartment(1, [], [], comps)

    def test_beyond_horizon(self):
        Compartment.times_follow_up = 2
        c = Compartment("C", 1.0)
        comps = prepare(c)
        run(comps, 2)
        with pytest.raises(RuntimeError, match="beyond times_follow_up"):
            c.update_compartment(3, [], [], comps)

    def test_unknown_upstream(self):
        s, i = Compartment("S", 100.0), Compartment("I", 0.0)
        connect(s, i, DistributionConstant(0.1))
        prepare(s, i)
        with pytest.raises(ValueError, match="unknown compartment 'S'"):
            i.update_compartment(1, [], [], {"I": i})

    def test_update_order_does_not_matter(self):
        Compartment.times_follow_up = 30

        def build():
            s, i, r = Compartment("S", 990.0), Compartment("I", 10.0), Compartment("R", 0.0)
            connect(s, i, DistributionMath("beta * S * I / N"))
            connect(i, r, Gamma(2.0, 3.0))
            connect(r, s, DistributionConstant(0.05))
            return prepare(s, i, r)

        forward = build()
        run(forward, 30, ["beta", "N"], [0.6, 1000.0])
        backward = build()
        run(backward, 30, ["beta", "N"], [0.6, 1000.0], order=list(backward.values())[::-1])
        for name in forward:
            assert np.array_equal(forward[name].total, backward[name].total)
        total = sum(c.total for c in forward.values())
        assert np.allclose(total, 1000.0)

    def test_replay_is_identical(self):
        Compartment.times_follow_up = 25

        def simulate():
            s, e, i, r = Compartment("S", 990.0), Compartment("E", 0.0), Compartment("I", 10.0), Compartment("R", 0.0)
            connect(s, e, DistributionMath("beta * S * I / N"))
            connect(e, i, Gamma(3.0, 1.5))
            connect(i, r, Exponential(0.2))
            comps = prepare(s, e, i, r)
            run(comps, 25, ["beta", "N"], [0.5, 1000.0])
            return {name: c.total for name, c in comps.items()}

        first, second = simulate(), simulate()
        for name in first:
            assert np.array_equal(first[name], second[name])


class TestCompartmentViolations(unittest.TestCase):
    def setUp(self):
        Compartment.times_follow_up = 3

    def build_overflow(self, strict=False):
        a = Compartment("A", 100.0, strict=strict)
        b, c = Compartment("B", 0.0), Compartment("C", 0.0)
        connect(a, b, DistributionMath("80"))
        connect(a, c, DistributionMath("80"))
        return a, b, c

    def build_heavy_weights(self, strict=False):
        a = Compartment("A", 100.0, strict=strict)
        b, c = Compartment("B", 0.0), Compartment("C", 0.0)
        connect(a, b, Gamma(2.0, 3.0), 0.8)
        connect(a, c, Gamma(2.0, 3.0), 0.8)
        return a, b, c

    def test_weights_above_one_recorded(self):
        a, b, c = self.build_heavy_weights()
        with self.assertLogs("laser_compartments.compartment", level="WARNING"):
            a.set_length_sub_compartment()
        assert len(a.violations) == 1
        violation = a.violations[0]
        assert violation.iteration == 0
        assert violation.kind == VIOLATION_WEIGHTS
        assert violation.amount == pytest.approx(0.6)

    def test_weights_above_one_strict(self):
        a, b, c = self.build_heavy_weights(strict=True)
        with pytest.raises(ModelingError, match="weights sum to 1.6"):
            a.set_length_sub_compartment()

    def test_math_weight_not_counted(self):
        a, b, c = Compartment("A", 100.0, strict=True), Compartment("B", 0.0), Compartment("C", 0.0)
        connect(a, b, Gamma(2.0, 3.0), 1.0)
        connect(a, c, DistributionMath("1"), 1.0)
        a.set_length_sub_compartment()
        assert a.violations == []

    def test_overflow_is_scaled_and_recorded(self):
        a, b, c = self.build_overflow()
        comps = prepare(a, b, c)
        with self.assertLogs("laser_compartments.compartment", level="WARNING"):
            run(comps, 1)
        assert a.total[1] == pytest.approx(0.0)
        assert b.total[1] == pytest.approx(50.0)
        assert c.total[1] == pytest.approx(50.0)
        assert len(a.violations) == 1
        violation = a.violations[0]
        assert violation.iteration == 1
        assert violation.kind == VIOLATION_OVERFLOW
        assert violation.amount == pytest.approx(60.0)

    def test_overflow_strict(self):
        a, b, c = self.build_overflow(strict=True)
        comps = prepare(a, b, c)
        with pytest.raises(ModelingError, match="outflow exceeds population"):
            a.update_compartment(1, [], [], comps)

    def test_math_outflow_capped_at_population(self):
        a, b = Compartment("A", 100.0), Compartment("B", 0.0)
        connect(a, b, DistributionMath("2000"))
        comps = prepare(a, b)
        with self.assertLogs("laser_compartments.compartment", level="WARNING"):
            run(comps, 1)
        assert a.total[1] == pytest.approx(0.0)
        assert b.total[1] == pytest.approx(100.0)
        assert a.violations[0].kind == VIOLATION_OVERFLOW

    def test_negative_math_outflow(self):
        a, b = Compartment("A", 100.0), Compartment("B", 0.0)
        connect(a, b, DistributionMath("-5"))
        comps = prepare(a, b)
        with self.assertLogs("laser_compartments.compartment", level="WARNING"):
            run(comps, 1)
        assert a.total[1] == 100.0
        assert b.total[1] == 0.0
        assert a.violations[0].kind == VIOLATION_NEGATIVE_OUTFLOW
        assert a.violations[0].amount == 5.0

    def test_age_buckets_clamps_deficit(self):
        buckets = np.array([10.0, 5.0])
        deficit = _age_buckets(buckets, np.array([12.0, 0.0]), 1.0, NEGATIVE_TOLERANCE)
        assert deficit == pytest.approx(2.0)
        assert np.array_equal(buckets, [1.0, 5.0])

    def test_age_buckets_ignores_rounding(self):
        buckets = np.array([10.0, 5.0])
        deficit = _age_buckets(buckets, np.array([10.0 + 1e-12, 0.0]), 0.0, NEGATIVE_TOLERANCE)
        assert deficit == 0.0
        assert np.array_equal(buckets, [0.0, 5.0])

    def test_negative_population_recorded(self):
        a, b = Compartment("A", 100.0), Compartment("B", 0.0)
        connect(a, b, DistributionConstant(0.1))
        comps = prepare(a, b)
        with mock.patch("laser_compartments.compartment._age_buckets", return_value=2.5):
            with self.assertLogs("laser_compartments.compartment", level="WARNING"):
                a.update_compartment(1, [], [], comps)
        assert a.violations == [Violation(1, VIOLATION_NEGATIVE_POPULATION, 2.5, "population went negative by 2.5, clamped to 0")]

    def test_negative_population_strict(self):
        a, b = Compartment("A", 100.0, strict=True), Compartment("B", 0.0)
        connect(a, b, DistributionConstant(0.1))
        comps = prepare(a, b)
        with mock.patch("laser_compartments.compartment._age_buckets", return_value=2.5):
            with pytest.raises(ModelingError, match="population went negative"):
                a.update_compartment(1, [], [], comps)

    def test_no_violations_for_valid_model(self):
        a, b = Compartment("A", 100.0), Compartment("B", 0.0)
        connect(a, b, Gamma(2.0, 3.0))
        comps = prepare(a, b)
        run(comps, 3)
        assert a.violations == []


def run_from(compartments, first, last, names=(), values=()):
    for tick in range(first, last + 1):
        for compartment in compartments.values():
            compartment.update_compartment(tick, list(names), list(values), compartments)


if __name__ == "__main__":
    unittest.main()
