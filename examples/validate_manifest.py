"""Example: validate a workflow manifest (YAML/JSON file) and print the report.

    python examples/validate_manifest.py path/to/workflow.yaml
    python examples/validate_manifest.py            # validates every built-in template
"""
import json
import sys

from opsflow.workflow.catalog import list_templates
from opsflow.workflow.validator import validate_manifest, validate_workflow


def main(argv):
    if len(argv) > 1:
        with open(argv[1], 'r') as f:
            reports = {argv[1]: validate_manifest(f.read())}
    else:
        reports = {t.id: validate_workflow(t) for t in list_templates()}

    ok = True
    for name, result in reports.items():
        print(f'--- {name}: {"valid" if result.valid else "INVALID"} ---')
        print(json.dumps(result.to_dict(), indent=2))
        ok = ok and result.valid
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main(sys.argv))
