import threading
import unittest

from clinic.notifications import DESTRUCTIVE, Notifier


class NotifierTests(unittest.TestCase):
    def test_drain_empties_the_queue(self) -> None:
        notifier = Notifier()
        notifier.success("Saved")
        notifier.error("Failed")

        notices = notifier.drain()

        self.assertEqual([notice.description for notice in notices], ["Saved", "Failed"])
        self.assertEqual(notices[1].variant, DESTRUCTIVE)
        self.assertEqual(notifier.drain(), [])

    def test_scoped_notices_are_kept_apart(self) -> None:
        notifier = Notifier()
        notifier.success("Background")
        scoped = notifier.open_scope()

        notifier.success("Mine")
        other_thread = threading.Thread(target=notifier.success, args=("Other request",))
        other_thread.start()
        other_thread.join()

        self.assertEqual([notice.description for notice in notifier.drain()], ["Mine"])
        self.assertEqual(scoped, [])

        notifier.close_scope()
        self.assertEqual([notice.description for notice in notifier.drain()], ["Background", "Other request"])


if __name__ == "__main__":
    unittest.main()
