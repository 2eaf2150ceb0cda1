"""
Timing utilities for surfel_mapper.

Provides:
- CodeTimer: Performance measurement context manager
"""
import logging
import timeit


class CodeTimer(object):
    """Timer class used with `with` statement

    - Disable output by setting CodeTimer.silent = True
    - Pass a ROS or Python logger to route the message

    with CodeTimer("Some function", logger):
        some_func()

    """

    silent = False

    def __init__(self, name="Code block", logger=None):
        self.name = name
        self.logger = logger if logger is not None else logging.getLogger('CodeTimer')
        self.took = None

    def __enter__(self):
        """Start measuring at the start of indent"""
        self.start = timeit.default_timer()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        """
            Stop measuring at the end of indent. This will run even
            if the indented lines raise an exception.
        """
        self.took = timeit.default_timer() - self.start
        if not CodeTimer.silent:
            self.logger.debug("{} time (s): [{:.6f}]".format(self.name, float(self.took)))
