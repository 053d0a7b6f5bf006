import unittest

from chartsettle.aggregator import ErrorAggregator, clamp_exit_status


class ExitPolicyTest(unittest.TestCase):
    def test_clamp_saturates_instead_of_wrapping(self) -> None:
        self.assertEqual(clamp_exit_status(0), 0)
        self.assertEqual(clamp_exit_status(3), 3)
        self.assertEqual(clamp_exit_status(254), 254)
        self.assertEqual(clamp_exit_status(255), 255)
        self.assertEqual(clamp_exit_status(256), 255)
        self.assertEqual(clamp_exit_status(300), 255)
        self.assertEqual(clamp_exit_status(-1), 0)

    def test_each_record_is_one_event(self) -> None:
        aggregator = ErrorAggregator()
        self.assertEqual(aggregator.exit_status(), 0)
        aggregator.record(0, "a.json", "first")
        aggregator.record(0, "a.json", "second")
        aggregator.record(2, "c.json", "third")
        self.assertEqual(aggregator.exit_status(), 3)
        self.assertEqual([event.message for event in aggregator.events()], ["first", "second", "third"])
        self.assertEqual(aggregator.events()[2].source_ref, "c.json")

    def test_many_errors_clamp_to_255(self) -> None:
        aggregator = ErrorAggregator()
        for index in range(300):
            aggregator.record(index % 4, "chart.json", f"error {index}")
        self.assertEqual(aggregator.event_count, 300)
        self.assertEqual(aggregator.exit_status(), 255)


if __name__ == "__main__":
    unittest.main()
