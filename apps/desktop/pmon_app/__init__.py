"""PMon command line and UI bridge.

``pmon_app.bridge.SnapshotBridge`` is exported for Qt front ends that embed
the engine; the CLI itself never constructs one. It needs the ``ui`` extra.
"""
