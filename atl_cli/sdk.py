"""
Atlassian SDK - High-level client with nice ergonomics.

This layer maps Confluence and JIRA resources onto the core engine: it builds
the create/lookup requests for each resource family and hands trees of them
to the Provisioner.
"""

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from atl_cli.core.client import APIClient, CLIError, ConfigurationError, ValidationError
from atl_cli.core.config import AtlassianConfig
from atl_cli.core.provision import Provisioner, create_or_fetch
from atl_cli.core.types import (
    CreateCall,
    CreationResult,
    ProvisioningReport,
    Request,
    ResourceSpec,
)
from atl_cli.core.upload import upload_file

CONFLUENCE_API = "/wiki/rest/api"
JIRA_API_V3 = "/rest/api/3"
JIRA_API_V2 = "/rest/api/2"
JIRA_AGILE = "/rest/agile/1.0"

DEFAULT_PROJECT_TEMPLATE = "com.pyxis.greenhopper.jira:gh-simplified-scrum-classic"
PAGE_DELAY = 0.3
ISSUE_DELAY = 0.2

logger = logging.getLogger(__name__)


def _specs(items: Iterable[dict[str, Any] | ResourceSpec]) -> list[ResourceSpec]:
    """Accept setup-file dicts or ready-made ResourceSpecs."""
    try:
        return [i if isinstance(i, ResourceSpec) else ResourceSpec.from_dict(i) for i in items]
    except ValueError as e:
        raise ValidationError(str(e))


def _first_result(payload: Any) -> Any:
    """First item of a Confluence search response, or None."""
    if isinstance(payload, dict):
        results = payload.get("results") or []
        return results[0] if results else None
    return None


def text_document(text: str) -> dict[str, Any]:
    """Wrap plain text in the minimal Atlassian Document Format body JIRA v3 expects."""
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
    }


class AtlassianClient:
    """
    High-level Atlassian Cloud client with typed methods and nice ergonomics.

    Example:
        client = AtlassianClient()

        # Idempotent space + page tree
        space = client.confluence.create_space("ENG", "Engineering", "Engineering docs")
        report = client.confluence.build_page_tree("ENG", homepage_id(space), pages)

        # Epics with stories
        client.jira.create_project("ACME", "Acme Platform")
        report = client.jira.create_issue_tree("ACME", epics)

    """

    def __init__(
        self,
        config: AtlassianConfig | None = None,
        timeout: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the Atlassian client.

        Args:
            config: Site and credentials (loaded from env / .env if omitted)
            timeout: Request timeout in seconds
            sleep: Used for 429 waits and pacing between bulk creations

        Raises:
            ConfigurationError: If domain, email or token is missing

        """
        self.config = (config or AtlassianConfig.load()).validate()
        self._client = APIClient(
            base_url=self.config.base_url,
            auth=self.config.auth,
            timeout=timeout,
            sleep=sleep,
        )

        # Sub-clients for the two products
        self.confluence = ConfluenceOperations(self._client)
        self.jira = JiraOperations(self._client)

    @property
    def api(self) -> APIClient:
        """The underlying low-level client."""
        return self._client


def homepage_id(space: CreationResult) -> str | None:
    """Homepage ID of a space result, falling back to the space's own ID."""
    payload = space.payload if isinstance(space.payload, dict) else {}
    home = payload.get("homepage") or {}
    home_id = home.get("id") if isinstance(home, dict) else None
    return str(home_id) if home_id is not None else space.id


# =============================================================================
# Confluence Operations
# =============================================================================


class ConfluenceOperations:
    """Spaces, pages, labels and attachments."""

    def __init__(self, client: APIClient):
        self._client = client

    def create_space(self, key: str, name: str, description: str = "") -> CreationResult:
        """
        Create a space, or fetch it if the key is taken.

        Args:
            key: Space key (e.g. ENG)
            name: Display name
            description: Plain-text description

        Returns:
            CreationResult; the payload includes the homepage

        """
        logger.info("Creating space: %s (%s)", name, key)
        call = CreateCall(
            create=Request(
                "POST",
                f"{CONFLUENCE_API}/space",
                {
                    "key": key,
                    "name": name,
                    "description": {"plain": {"value": description, "representation": "plain"}},
                },
            ),
            fetch=Request("GET", f"{CONFLUENCE_API}/space/{key}?expand=homepage"),
        )
        result = create_or_fetch(self._client, call, natural_key=key)
        logger.info("  Space %s ready. Homepage ID: %s", key, homepage_id(result) or "N/A")
        return result

    def page_call(self, space_key: str, title: str, body: str, parent_id: str | None = None) -> CreateCall:
        """Create request for a page, with a lookup by title for when it already exists."""
        payload: dict[str, Any] = {
            "type": "page",
            "title": title,
            "space": {"key": space_key},
            "body": {"storage": {"value": body, "representation": "storage"}},
        }
        if parent_id:
            payload["ancestors"] = [{"id": parent_id}]

        lookup = APIClient.build_request(
            "GET",
            f"{CONFLUENCE_API}/content",
            params={"spaceKey": space_key, "title": title, "expand": "version"},
        )
        return CreateCall(
            create=Request("POST", f"{CONFLUENCE_API}/content", payload),
            fetch=lookup,
            extract=_first_result,
        )

    def create_page(
        self,
        space_key: str,
        title: str,
        body: str,
        parent_id: str | None = None,
        labels: Iterable[str] = (),
    ) -> CreationResult:
        """
        Create a page, or fetch the existing page with the same title.

        Args:
            space_key: Space key
            title: Page title (unique within the space)
            body: Storage-format body
            parent_id: Parent page ID
            labels: Labels to attach; label errors are logged and ignored

        Returns:
            CreationResult for the page

        """
        logger.info("  Creating page: %s%s", title, f" (under {parent_id})" if parent_id else "")
        result = create_or_fetch(
            self._client,
            self.page_call(space_key, title, body, parent_id),
            natural_key=title,
            parent_id=parent_id,
        )
        logger.info("    Page ready: ID=%s", result.id)
        self.add_labels(result.id, labels)
        return result

    def add_labels(self, page_id: str | None, labels: Iterable[str]) -> None:
        """Attach global labels to a page. Failures are logged, not raised."""
        names = [label for label in labels if label]
        if not page_id or not names:
            return
        try:
            self._client.post(
                f"{CONFLUENCE_API}/content/{page_id}/label",
                [{"prefix": "global", "name": name} for name in names],
            )
        except ConfigurationError:
            raise
        except CLIError as e:
            logger.warning("    Could not label page %s: %s", page_id, e.message)

    def update_page(self, space_key: str, title: str, body: str) -> dict[str, Any] | None:
        """
        Replace a page's body, bumping its version.

        Returns:
            The page as it was before the update, or None if not found

        """
        pages = self.find_pages(space_key, title)
        if not pages:
            logger.info('  Page "%s" not found in %s, skipping', title, space_key)
            return None

        page = pages[0]
        version = page["version"]["number"] + 1
        self._client.put(
            f"{CONFLUENCE_API}/content/{page['id']}",
            {
                "type": "page",
                "title": page["title"],
                "body": {"storage": {"value": body, "representation": "storage"}},
                "version": {"number": version},
            },
        )
        logger.info("  Updated: %s/%s -> v%d", space_key, title, version)
        return page

    def get_page(self, space_key: str, title: str) -> dict[str, Any] | None:
        """Get a page by title, with its body. None if not found."""
        result = self._client.get(
            f"{CONFLUENCE_API}/content",
            {"spaceKey": space_key, "title": title, "expand": "version,body.storage"},
        )
        return _first_result(result)

    def get_page_by_id(self, page_id: str) -> dict[str, Any]:
        """Get a page by ID, with its body."""
        return self._client.get(f"{CONFLUENCE_API}/content/{page_id}", {"expand": "version,body.storage"})

    def delete_page(self, page_id: str) -> bool:
        """Delete a page."""
        self._client.delete(f"{CONFLUENCE_API}/content/{page_id}")
        return True

    def list_pages(self, space_key: str) -> list[dict[str, Any]]:
        """List all pages in a space, with ancestors."""
        result = self._client.get(
            f"{CONFLUENCE_API}/content",
            {"spaceKey": space_key, "type": "page", "limit": 500, "expand": "ancestors"},
        )
        return result.get("results", []) if isinstance(result, dict) else []

    def find_pages(self, space_key: str, term: str) -> list[dict[str, Any]]:
        """Find pages by exact title."""
        result = self._client.get(
            f"{CONFLUENCE_API}/content",
            {"spaceKey": space_key, "title": term, "expand": "version"},
        )
        return result.get("results", []) if isinstance(result, dict) else []

    def upload_attachment(self, page_id: str, filepath: str | Path, filename: str | None = None) -> Any:
        """
        Attach a local file to a page, replacing a same-named attachment.

        Args:
            page_id: Page ID
            filepath: Local file to upload
            filename: Attachment name (defaults to the file's name)

        Returns:
            Attachment metadata

        Raises:
            UploadError: If the upload was rejected

        """
        return upload_file(
            self._client,
            f"{CONFLUENCE_API}/content/{page_id}/child/attachment",
            filepath,
            filename,
        )

    def build_page_tree(
        self,
        space_key: str,
        parent_id: str | None,
        pages: Iterable[dict[str, Any] | ResourceSpec],
        delay: float = PAGE_DELAY,
    ) -> ProvisioningReport:
        """
        Build a page tree from a hierarchical config.

        Args:
            space_key: Space key
            parent_id: Page the roots hang under (usually the space homepage)
            pages: [{"title", "body", "labels"?, "children"?}, ...]
            delay: Seconds between page creations

        Returns:
            ProvisioningReport with one entry per attempted page

        """

        def build(spec: ResourceSpec, parent: CreationResult | None) -> CreateCall:
            return self.page_call(space_key, spec.key, spec.content or "", parent.id if parent else None)

        def label(spec: ResourceSpec, result: CreationResult) -> None:
            self.add_labels(result.id, spec.attributes.get("labels") or ())

        root = CreationResult(id=parent_id, key=space_key) if parent_id else None
        provisioner = Provisioner(self._client, build, pacing_delay=delay, sleep=self._client.sleep, on_created=label)
        return provisioner.provision(_specs(pages), root)

    @staticmethod
    def page_tree(pages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Nest a flat page listing by each page's nearest ancestor.

        Pages whose parent is not in the listing become roots.

        Returns:
            Root nodes: {"id", "title", "children": [...]}

        """
        by_id = {p["id"]: {"id": p["id"], "title": p.get("title", ""), "children": []} for p in pages}
        roots = []
        for page in pages:
            node = by_id[page["id"]]
            ancestors = page.get("ancestors") or []
            parent_id = ancestors[-1].get("id") if ancestors else None
            if parent_id in by_id:
                by_id[parent_id]["children"].append(node)
            else:
                roots.append(node)
        return roots


# =============================================================================
# JIRA Operations
# =============================================================================


class JiraOperations:
    """Projects, issues, boards, sprints, components, labels and users."""

    def __init__(self, client: APIClient):
        self._client = client

    # ----- Projects ----------------------------------------------------------

    def create_project(
        self,
        key: str,
        name: str,
        description: str = "",
        project_type: str = "software",
        template: str = DEFAULT_PROJECT_TEMPLATE,
        lead_account_id: str | None = None,
    ) -> CreationResult:
        """
        Create a project, or fetch it if the key is taken.

        Args:
            key: Project key (e.g. ACME)
            name: Project name
            description: Project description
            project_type: projectTypeKey
            template: projectTemplateKey
            lead_account_id: Account ID of the project lead

        Returns:
            CreationResult for the project

        """
        logger.info("Creating JIRA project: %s (%s)", name, key)
        payload: dict[str, Any] = {
            "key": key,
            "name": name,
            "projectTypeKey": project_type,
            "description": description,
            "projectTemplateKey": template,
        }
        if lead_account_id:
            payload["leadAccountId"] = lead_account_id

        call = CreateCall(
            create=Request("POST", f"{JIRA_API_V3}/project", payload),
            fetch=Request("GET", f"{JIRA_API_V3}/project/{key}"),
        )
        result = create_or_fetch(self._client, call, natural_key=key)
        logger.info("  Project ready: %s (ID: %s)", result.key, result.id)
        return result

    def get_project(self, key: str) -> dict[str, Any]:
        """Get a project by key."""
        return self._client.get(f"{JIRA_API_V3}/project/{key}")

    def list_projects(self) -> list[dict[str, Any]]:
        """List all projects visible to the account."""
        return list(self._client.paginate(f"{JIRA_API_V3}/project/search", page_size=100))

    def delete_project(self, key: str) -> bool:
        """Delete a project."""
        self._client.delete(f"{JIRA_API_V3}/project/{key}")
        return True

    # ----- Issues ------------------------------------------------------------

    @staticmethod
    def issue_payload(
        project_key: str,
        issue_type: str,
        summary: str,
        description: str | dict[str, Any] = "",
        priority: str | None = None,
        labels: Iterable[str] | None = None,
        components: Iterable[str] | None = None,
        parent_key: str | None = None,
        assignee_id: str | None = None,
        story_points: float | None = None,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build the create-issue body. String descriptions are wrapped as ADF."""
        issue_fields: dict[str, Any] = {
            "project": {"key": project_key},
            "issuetype": {"name": issue_type},
            "summary": summary,
            "description": text_document(description) if isinstance(description, str) else description,
            **(fields or {}),
        }
        if priority:
            issue_fields["priority"] = {"name": priority}
        if labels:
            issue_fields["labels"] = list(labels)
        if components:
            issue_fields["components"] = [{"name": c} for c in components]
        if parent_key:
            issue_fields["parent"] = {"key": parent_key}
        if assignee_id:
            issue_fields["assignee"] = {"accountId": assignee_id}
        if story_points:
            issue_fields["story_points"] = story_points
        return {"fields": issue_fields}

    def create_issue(
        self,
        project_key: str,
        issue_type: str,
        summary: str,
        description: str | dict[str, Any] = "",
        **options: Any,
    ) -> CreationResult:
        """
        Create an issue.

        Args:
            project_key: Project key
            issue_type: Epic, Story, Task, Sub-task, ...
            summary: Issue summary
            description: Plain text or an ADF document
            **options: priority, labels, components, parent_key, assignee_id,
                story_points, fields

        Returns:
            CreationResult with the issue key

        """
        payload = self.issue_payload(project_key, issue_type, summary, description, **options)
        result = self._client.post(f"{JIRA_API_V3}/issue", payload)
        created = CreationResult.from_payload(result, natural_key=summary)
        logger.info("  Issue created: %s - %s", created.key, summary)
        return created

    def update_issue(self, issue_key: str, fields: dict[str, Any]) -> Any:
        """Update fields on an issue."""
        return self._client.put(f"{JIRA_API_V3}/issue/{issue_key}", {"fields": fields})

    def get_issue(self, issue_key: str) -> dict[str, Any]:
        """Get an issue by key."""
        return self._client.get(f"{JIRA_API_V3}/issue/{issue_key}")

    def search_issues(self, jql: str, max_results: int = 50) -> list[dict[str, Any]]:
        """Search issues with JQL."""
        result = self._client.post(
            f"{JIRA_API_V3}/search",
            {
                "jql": jql,
                "maxResults": max_results,
                "fields": ["summary", "status", "priority", "assignee", "issuetype", "labels", "parent"],
            },
        )
        return result.get("issues", []) if isinstance(result, dict) else []

    def transition_issue(self, issue_key: str, transition_id: str) -> Any:
        """Move an issue through a workflow transition."""
        return self._client.post(
            f"{JIRA_API_V3}/issue/{issue_key}/transitions",
            {"transition": {"id": transition_id}},
        )

    def add_comment(self, issue_key: str, body: str | dict[str, Any]) -> Any:
        """Comment on an issue. String bodies are wrapped as ADF."""
        content = text_document(body) if isinstance(body, str) else body
        return self._client.post(f"{JIRA_API_V3}/issue/{issue_key}/comment", {"body": content})

    def create_issue_tree(
        self,
        project_key: str,
        issues: Iterable[dict[str, Any] | ResourceSpec],
        delay: float = ISSUE_DELAY,
    ) -> ProvisioningReport:
        """
        Create issues from a structured config: epics, stories, sub-tasks.

        Root issues default to Story and children to Sub-task; a child is
        linked to its parent through the ``parent`` field.

        Args:
            project_key: Project key
            issues: [{"type"?, "summary", "description"?, "children"?, ...}, ...]
            delay: Seconds between issue creations

        Returns:
            ProvisioningReport with one entry per attempted issue

        """

        def build(spec: ResourceSpec, parent: CreationResult | None) -> CreateCall:
            attrs = spec.attributes
            default_type = "Sub-task" if parent else "Story"
            payload = self.issue_payload(
                project_key,
                attrs.get("type") or default_type,
                spec.key,
                spec.content or "",
                priority=attrs.get("priority"),
                labels=attrs.get("labels"),
                components=attrs.get("components"),
                parent_key=parent.key if parent else None,
                assignee_id=attrs.get("assignee_id"),
                story_points=attrs.get("story_points"),
                fields=attrs.get("fields"),
            )
            return CreateCall(create=Request("POST", f"{JIRA_API_V3}/issue", payload))

        provisioner = Provisioner(self._client, build, pacing_delay=delay, sleep=self._client.sleep)
        return provisioner.provision(_specs(issues))

    # ----- Boards & Sprints --------------------------------------------------

    def list_boards(self, project_key: str) -> list[dict[str, Any]]:
        """List agile boards for a project."""
        result = self._client.get(f"{JIRA_AGILE}/board", {"projectKeyOrId": project_key})
        return result.get("values", []) if isinstance(result, dict) else []

    def create_sprint(
        self,
        board_id: int | str,
        name: str,
        goal: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> dict[str, Any]:
        """Create a sprint on a board."""
        payload: dict[str, Any] = {"name": name, "originBoardId": board_id}
        if start_date:
            payload["startDate"] = start_date
        if end_date:
            payload["endDate"] = end_date
        if goal:
            payload["goal"] = goal

        result = self._client.post(f"{JIRA_AGILE}/sprint", payload)
        logger.info("  Sprint created: %s (ID: %s)", result.get("name"), result.get("id"))
        return result

    def move_to_sprint(self, sprint_id: int | str, issue_keys: list[str]) -> Any:
        """Move issues into a sprint."""
        return self._client.post(f"{JIRA_AGILE}/sprint/{sprint_id}/issue", {"issues": issue_keys})

    def list_sprints(self, board_id: int | str) -> list[dict[str, Any]]:
        """List active and future sprints on a board."""
        result = self._client.get(f"{JIRA_AGILE}/board/{board_id}/sprint", {"state": "active,future"})
        return result.get("values", []) if isinstance(result, dict) else []

    # ----- Components --------------------------------------------------------

    def create_component(self, project_key: str, name: str, description: str = "") -> CreationResult:
        """Create a component, or fetch the existing one with the same name."""

        def by_name(components: Any) -> Any:
            if not isinstance(components, list):
                return None
            return next((c for c in components if c.get("name") == name), None)

        call = CreateCall(
            create=Request(
                "POST",
                f"{JIRA_API_V3}/component",
                {"project": project_key, "name": name, "description": description},
            ),
            fetch=Request("GET", f"{JIRA_API_V3}/project/{project_key}/components"),
            extract=by_name,
        )
        result = create_or_fetch(self._client, call, natural_key=name)
        logger.info("  Component ready: %s", name)
        return result

    def list_components(self, project_key: str) -> list[dict[str, Any]]:
        """List a project's components."""
        return self._client.get(f"{JIRA_API_V3}/project/{project_key}/components")

    # ----- Labels & Users ----------------------------------------------------

    def get_labels(self) -> list[str]:
        """List labels in use across the site."""
        result = self._client.get(f"{JIRA_API_V2}/label", {"maxResults": 1000})
        return result.get("values", []) if isinstance(result, dict) else []

    def search_users(self, query: str) -> list[dict[str, Any]]:
        """Find users by name or email."""
        return self._client.get(f"{JIRA_API_V3}/user/search", {"query": query})

    def get_myself(self) -> dict[str, Any]:
        """The account the credentials belong to."""
        return self._client.get(f"{JIRA_API_V3}/myself")
