"""deploy-to-balena: continuous delivery of balena releases from GitHub events.

Pull requests build draft releases, merges finalize them and pushes to
the target branch build final releases. Each run handles exactly one
workflow event and publishes the release id and version as outputs.
"""

__version__ = "1.0.0"
