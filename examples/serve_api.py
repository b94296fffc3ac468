"""
serve_api.py: Run the profile API with an in-process refresh worker.

Usage:
    export GITHUB_TOKEN=ghp_...
    export GHPULSE_REFRESH_API_SECRET=change-me
    python examples/serve_api.py
"""

from ghpulse import GhPulseSettings, build_runtime
from ghpulse.service import ProfileServiceHost


def main() -> None:
    runtime = build_runtime(GhPulseSettings.from_env())
    ProfileServiceHost(runtime, run_worker=True).run()


if __name__ == "__main__":
    main()
