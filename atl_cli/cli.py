"""
Atlassian CLI - Opinionated command-line interface.

This layer provides the user-facing CLI commands, using the SDK layer
for all operations. It handles:
- Argument parsing
- Logging setup (progress on stderr)
- TTY detection for human vs machine output
- JSON output for piping/automation
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from atl_cli.core.client import CLIError, ConfigurationError, ValidationError
from atl_cli.core.config import AtlassianConfig
from atl_cli.core.types import ProvisioningReport, ResourceSpec
from atl_cli.sdk import ISSUE_DELAY, PAGE_DELAY, AtlassianClient, homepage_id

logger = logging.getLogger(__name__)

# =============================================================================
# Output Helpers
# =============================================================================


PREVIEW_LIMIT = 5  # Spaces/projects shown by `atl test`
LIST_LIMIT = 50  # Issues shown by `atl jira list`
EXIT_PARTIAL_FAILURE = 2


def setup_logging(level: int = logging.INFO) -> None:
    """Send progress logs to stderr so stdout stays clean JSON."""
    fmt = "%(message)s" if level > logging.DEBUG else "%(asctime)s %(name)s %(levelname)s %(message)s"
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr, force=True)


def is_tty() -> bool:
    """Check if stdout is a TTY (human) or pipe (LLM/machine)."""
    return sys.stdout.isatty()


def json_output(data: Any, pretty: bool = False) -> None:
    """Print JSON output."""
    indent = 2 if pretty or is_tty() else None
    print(json.dumps(data, indent=indent, default=str))


def error_output(error: CLIError) -> None:
    """Print error and exit."""
    json_output(error.to_dict())
    sys.exit(1)


def success_output(data: Any) -> None:
    """Print success output."""
    json_output(data)


def table_output(
    headers: list[str],
    rows: list[list[str]],
    widths: list[int],
) -> None:
    """Print a formatted table for human output."""
    # Header
    header_line = "  ".join(h.ljust(w) if i < len(widths) else h for i, (h, w) in enumerate(zip(headers, widths)))
    print(header_line)
    print("-" * len(header_line))

    # Rows
    for row in rows:
        row_line = "  ".join(
            str(v)[:w].ljust(w) if i < len(widths) else str(v) for i, (v, w) in enumerate(zip(row, widths))
        )
        print(row_line)


def tree_output(nodes: list[dict[str, Any]], indent: str = "") -> None:
    """Print nested {"title", "id", "children"} nodes as an indented tree."""
    for node in nodes:
        print(f"{indent}{node['title']} (ID: {node['id']})")
        tree_output(node["children"], indent + "  ")


def load_setup_file(path: str) -> dict[str, Any]:
    """Read a JSON setup file (or - for stdin)."""
    try:
        text = sys.stdin.read() if path == "-" else Path(path).read_text()
    except FileNotFoundError:
        raise ValidationError(f"File not found: {path}")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ValidationError("Setup file must contain a JSON object")
    return data


def setup_list(data: dict[str, Any], field: str, required: str | None = None) -> list[dict[str, Any]]:
    """An optional list of objects from a setup file, each carrying ``required`` if given."""
    items = data.get(field) or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValidationError(f'"{field}" must be a list of objects')
    if required and not all(item.get(required) for item in items):
        raise ValidationError(f'Every entry in "{field}" needs a "{required}"')
    return items


def setup_forest(items: Any, field: str) -> list[ResourceSpec]:
    """Parse a tree of pages or issues up front, so a bad node fails before any request."""
    if not isinstance(items, list):
        raise ValidationError(f'"{field}" must be a list')
    try:
        return ResourceSpec.forest(items)
    except ValueError as e:
        raise ValidationError(f'Invalid entry in "{field}": {e}')


def finish_report(reports: list[ProvisioningReport], strict: bool) -> None:
    """Exit non-zero under --strict when any node failed."""
    if strict and any(not r.ok for r in reports):
        sys.exit(EXIT_PARTIAL_FAILURE)


# =============================================================================
# CLI Commands
# =============================================================================


def cmd_test(client: AtlassianClient, _args: argparse.Namespace) -> None:
    """Check that the credentials work against Confluence and JIRA."""
    output: dict[str, Any] = {"domain": client.config.domain, "email": client.config.email}

    try:
        spaces = client.api.get("/wiki/rest/api/space", {"limit": PREVIEW_LIMIT})
        output["confluence"] = {
            "spaces": [{"key": s.get("key"), "name": s.get("name")} for s in spaces.get("results", [])],
        }
    except CLIError as e:
        output["confluence"] = {"error": e.message[:100]}

    try:
        projects = client.api.get("/rest/api/3/project/search", {"maxResults": PREVIEW_LIMIT})
        output["jira"] = {
            "projects": [{"key": p.get("key"), "name": p.get("name")} for p in projects.get("values", [])],
        }
    except CLIError as e:
        output["jira"] = {"error": e.message[:100]}

    if is_tty():
        print(f"Domain: {output['domain']}")
        print(f"Email:  {output['email']}")
        for product, items_key in (("confluence", "spaces"), ("jira", "projects")):
            result = output[product]
            if "error" in result:
                print(f"\n{product.title()}: ERROR - {result['error']}")
                continue
            print(f"\n{product.title()}: {len(result[items_key])} {items_key} found")
            for item in result[items_key]:
                print(f"  - {item['key']}: {item['name']}")
    else:
        success_output(output)


def cmd_confluence_setup(client: AtlassianClient, args: argparse.Namespace) -> None:
    """Create spaces and page trees from a setup file."""
    try:
        data = load_setup_file(args.file)
        spaces = setup_list(data, "spaces", required="key")
        if not spaces:
            raise ValidationError('Setup file needs a non-empty "spaces" list')
        page_trees = [setup_forest(space.get("pages") or [], "pages") for space in spaces]

        delay = args.delay if args.delay is not None else PAGE_DELAY
        results = []
        reports = []
        for space, pages in zip(spaces, page_trees):
            key = space["key"]
            name = space.get("name") or key

            try:
                created = client.confluence.create_space(key, name, space.get("description", ""))
            except ConfigurationError:
                raise
            except CLIError as e:
                logger.warning("Space %s failed: %s", key, e.message)
                results.append({"key": key, "error": e.message})
                continue

            home_id = homepage_id(created)
            report = client.confluence.build_page_tree(key, home_id, pages, delay=delay)
            reports.append(report)

            entry = {"key": key, "id": created.id, "homepage_id": home_id, "pages": report.to_dict()}

            # Homepage last, so a children macro sees the new pages
            if space.get("homepage"):
                try:
                    client.confluence.update_page(key, name, space["homepage"])
                except ConfigurationError:
                    raise
                except CLIError as e:
                    logger.warning("Homepage update for %s failed: %s", key, e.message)
                    entry["homepage_error"] = e.message

            results.append(entry)

        success_output({"spaces": results})
        finish_report(reports, args.strict)
    except CLIError as e:
        error_output(e)


def cmd_confluence_update(client: AtlassianClient, args: argparse.Namespace) -> None:
    """Replace a page's body with stdin."""
    try:
        body = sys.stdin.read()
        if not body.strip():
            raise ValidationError("No content on stdin. Pipe HTML content.")

        page = client.confluence.update_page(args.space, args.title, body)
        if page is None:
            raise ValidationError(f'Page "{args.title}" not found in {args.space}')
        success_output(
            {
                "id": page["id"],
                "title": page["title"],
                "version": page["version"]["number"] + 1,
            }
        )
    except CLIError as e:
        error_output(e)


def cmd_confluence_list(client: AtlassianClient, args: argparse.Namespace) -> None:
    """List the pages of a space as a tree."""
    try:
        pages = client.confluence.list_pages(args.space)
        tree = client.confluence.page_tree(pages)

        if is_tty():
            print(f"Pages in {args.space} ({len(pages)}):\n")
            tree_output(tree)
        else:
            success_output({"data": tree, "total_count": len(pages)})
    except CLIError as e:
        error_output(e)


def cmd_confluence_upload(client: AtlassianClient, args: argparse.Namespace) -> None:
    """Attach a file to a page."""
    try:
        result = client.confluence.upload_attachment(args.page_id, args.file, args.name)
        success_output({"success": True, "data": result})
    except FileNotFoundError:
        error_output(ValidationError(f"File not found: {args.file}"))
    except CLIError as e:
        error_output(e)


def _sprint_setup(
    client: AtlassianClient,
    project_key: str,
    sprints: list[dict[str, Any]],
    issue_keys: list[str],
) -> dict[str, Any]:
    """Create sprints on the project's first board and fill them with issues in order."""
    boards = client.jira.list_boards(project_key)
    if not boards:
        logger.info("  No board found - sprints not created")
        return {"skipped": "No board found"}

    board = boards[0]
    logger.info("  Using board: %s (ID: %s)", board.get("name"), board["id"])
    remaining = list(issue_keys)
    created = []
    for sprint in sprints:
        result = client.jira.create_sprint(
            board["id"],
            sprint["name"],
            goal=sprint.get("goal"),
            start_date=sprint.get("start_date"),
            end_date=sprint.get("end_date"),
        )
        sprint_id = result.get("id") if isinstance(result, dict) else None
        if sprint_id is None:
            raise CLIError(f'Sprint "{sprint["name"]}" was created without an ID')
        count = sprint.get("issues") or 0
        batch, remaining = remaining[:count], remaining[count:]
        if batch:
            client.jira.move_to_sprint(sprint_id, batch)
            logger.info("  Moved %d issues to %s", len(batch), sprint["name"])
        created.append({"id": sprint_id, "name": sprint["name"], "issues": batch})
    return {"board_id": board["id"], "sprints": created}


def cmd_jira_setup(client: AtlassianClient, args: argparse.Namespace) -> None:
    """Create a project, components, an issue tree and sprints from a setup file."""
    try:
        data = load_setup_file(args.file)
        project = data.get("project") or {}
        if not isinstance(project, dict) or not project.get("key") or not project.get("name"):
            raise ValidationError('Setup file needs "project" with "key" and "name"')
        components = setup_list(data, "components", required="name")
        sprints = setup_list(data, "sprints", required="name")
        if not all(isinstance(s.get("issues") or 0, int) and (s.get("issues") or 0) >= 0 for s in sprints):
            raise ValidationError('Sprint "issues" must be a whole number')
        issues = setup_forest(data.get("issues") or [], "issues")

        key = project["key"]
        delay = args.delay if args.delay is not None else ISSUE_DELAY
        created_project = client.jira.create_project(
            key,
            project["name"],
            description=project.get("description", ""),
            project_type=project.get("type", "software"),
            lead_account_id=project.get("lead_account_id"),
            **({"template": project["template"]} if project.get("template") else {}),
        )
        output: dict[str, Any] = {"project": created_project.to_dict(), "components": []}

        for i, component in enumerate(components):
            if i and delay > 0:
                client.api.sleep(delay)
            try:
                result = client.jira.create_component(key, component["name"], component.get("description", ""))
                output["components"].append({"name": component["name"], "id": result.id})
            except ConfigurationError:
                raise
            except CLIError as e:
                logger.warning('  Component "%s" failed: %s', component["name"], e.message[:80])
                output["components"].append({"name": component["name"], "error": e.message})

        report = client.jira.create_issue_tree(key, issues, delay=delay)
        output["issues"] = report.to_dict()
        logger.info("  Created %d issues total.", len(report.created))

        if sprints:
            try:
                keys = [r.key for r in report.created if r.key]
                output["sprints"] = _sprint_setup(client, key, sprints, keys)
            except ConfigurationError:
                raise
            except CLIError as e:
                logger.warning("  Sprint setup skipped: %s", e.message[:80])
                output["sprints"] = {"skipped": e.message}

        success_output(output)
        finish_report([report], args.strict)
    except CLIError as e:
        error_output(e)


def cmd_jira_list(client: AtlassianClient, args: argparse.Namespace) -> None:
    """List the latest issues in a project."""
    try:
        issues = client.jira.search_issues(f"project = {args.project} ORDER BY created DESC", LIST_LIMIT)
        rows = []
        for issue in issues:
            fields = issue.get("fields") or {}
            rows.append(
                {
                    "key": issue.get("key"),
                    "type": (fields.get("issuetype") or {}).get("name", "?"),
                    "summary": fields.get("summary", ""),
                    "status": (fields.get("status") or {}).get("name", "?"),
                    "priority": (fields.get("priority") or {}).get("name", "?"),
                }
            )

        if is_tty():
            if not rows:
                print("No issues found.")
                return
            table_output(
                ["Key", "Type", "Summary", "Status", "Priority"],
                [[r["key"], r["type"], r["summary"], r["status"], r["priority"]] for r in rows],
                [12, 10, 50, 14, 10],
            )
        else:
            success_output({"data": rows, "total_count": len(rows)})
    except CLIError as e:
        error_output(e)


# =============================================================================
# Main CLI
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="atl",
        description="Atlassian CLI - Provision Confluence pages and JIRA issues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Output Modes:
  TTY (human):  Tree/table views, progress on stderr
  Pipe (LLM):   JSON on stdout

Config:
  ATLASSIAN_DOMAIN, ATLASSIAN_EMAIL and ATLASSIAN_API_TOKEN from the
  environment or a .env file in the working directory.

Examples:
  atl test
  atl confluence setup docs.json
  atl confluence list ENG | jq '.data[].title'
  cat page.html | atl confluence update ENG "Getting Started"
  atl --strict jira setup backlog.json
""",
    )
    parser.add_argument("--env-file", help="Path to .env file (default: ./.env)")
    parser.add_argument("--delay", type=float, help="Seconds between creations during setup")
    parser.add_argument("--strict", action="store_true", help="Exit 2 if any resource failed during setup")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log warnings and errors")
    parser.set_defaults(needs_client=True)
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # ========== Test ==========
    test = subparsers.add_parser("test", help="Test connection to Confluence + JIRA")
    test.set_defaults(func=cmd_test)

    # ========== Confluence ==========
    confluence = subparsers.add_parser("confluence", help="Spaces and pages")
    confluence.set_defaults(func=lambda _c, _a: confluence.print_help(), needs_client=False)
    confluence_sub = confluence.add_subparsers(dest="subcommand")

    c_setup = confluence_sub.add_parser("setup", help="Create spaces/pages from a JSON setup file")
    c_setup.add_argument("file", help="Setup JSON file (or - for stdin)")
    c_setup.set_defaults(func=cmd_confluence_setup, needs_client=True)

    c_update = confluence_sub.add_parser("update", help="Update page body from stdin")
    c_update.add_argument("space", help="Space key")
    c_update.add_argument("title", help="Page title")
    c_update.set_defaults(func=cmd_confluence_update, needs_client=True)

    c_list = confluence_sub.add_parser("list", help="List all pages in a space (tree view)")
    c_list.add_argument("space", help="Space key")
    c_list.set_defaults(func=cmd_confluence_list, needs_client=True)

    c_upload = confluence_sub.add_parser("upload", help="Attach a file to a page")
    c_upload.add_argument("page_id", help="Page ID")
    c_upload.add_argument("file", help="File to upload")
    c_upload.add_argument("--name", "-n", help="Attachment name (default: file name)")
    c_upload.set_defaults(func=cmd_confluence_upload, needs_client=True)

    # ========== JIRA ==========
    jira = subparsers.add_parser("jira", help="Projects and issues")
    jira.set_defaults(func=lambda _c, _a: jira.print_help(), needs_client=False)
    jira_sub = jira.add_subparsers(dest="subcommand")

    j_setup = jira_sub.add_parser("setup", help="Create project + issues from a JSON setup file")
    j_setup.add_argument("file", help="Setup JSON file (or - for stdin)")
    j_setup.set_defaults(func=cmd_jira_setup, needs_client=True)

    j_list = jira_sub.add_parser("list", help="List issues in a project")
    j_list.add_argument("project", help="Project key")
    j_list.set_defaults(func=cmd_jira_list, needs_client=True)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.verbose:
        setup_logging(logging.DEBUG)
    else:
        setup_logging(logging.WARNING if args.quiet else logging.INFO)

    # Create client (config errors end the run before any request)
    client = None
    if args.needs_client:
        try:
            client = AtlassianClient(AtlassianConfig.load(args.env_file))
        except ConfigurationError as e:
            error_output(e)

    # Run command (group parsers have default funcs that print help)
    args.func(client, args)


if __name__ == "__main__":
    main()
