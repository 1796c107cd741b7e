"""Utilities for handling KeyboardInterrupt in worker threads.

A KeyboardInterrupt raised inside a build worker would otherwise only end
that worker. These helpers forward it to the main thread, where the
incremental builder turns it into a cancellation.
"""

import _thread


def handle_keyboard_interrupt_properly(ke: KeyboardInterrupt) -> None:
    """Handle KeyboardInterrupt by propagating it to the main thread.

    Usage:
        try:
            run_unit()
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke)

    Args:
        ke: The KeyboardInterrupt exception to handle

    Raises:
        KeyboardInterrupt: Always re-raises the exception after handling
    """
    _thread.interrupt_main()
    raise ke
