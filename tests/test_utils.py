from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from chartsettle.utils import find_free_port, write_bytes_durably


class UtilsTest(unittest.TestCase):
    def test_write_bytes_durably(self) -> None:
        with TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nested" / "chart.json.png"
            write_bytes_durably(path, b"first")
            write_bytes_durably(path, b"second")
            self.assertEqual(path.read_bytes(), b"second")
            self.assertEqual([p.name for p in path.parent.iterdir()], ["chart.json.png"])

    def test_find_free_port(self) -> None:
        port = find_free_port("127.0.0.1")
        self.assertGreater(port, 0)
        self.assertLessEqual(port, 65535)


if __name__ == "__main__":
    unittest.main()
