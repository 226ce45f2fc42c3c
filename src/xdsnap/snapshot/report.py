"""Message templates for the run summary."""

REPORT_HEADER = """
# xdsnap capture summary
"""

REPORT_SECTION_RUN = """
## Run
- Cycles: {cycles}
- Mode: {mode}
- Output directory: `{output_dir}`
"""

REPORT_SECTION_BUNDLES = """
## Snapshots
{bundles}
"""

REPORT_SECTION_FAILURES = """
## Failures
{failures}
"""

REPORT_SECTION_SKIPPED = """
## Skipped pods
{skipped}
"""

REPORT_NO_SNAPSHOT = """
## Result
No snapshot was produced. Check the log output above for per-pod errors.
"""
