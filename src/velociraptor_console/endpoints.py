"""Catalog of Velociraptor API endpoints."""

from enum import Enum
from string import Formatter
from urllib.parse import quote

from .errors import InvalidURLError


class Endpoint(Enum):
    """All remote operations known to the client.

    Each member is (logical name, path template, HTTP verb). Path parameters
    use str.format syntax and are percent-encoded on resolution.
    """

    # Health & Info
    HEALTH = ("health", "/api/v1/GetServerInfo", "GET")
    VERSION = ("version", "/api/v1/GetServerInfo", "GET")
    SERVER_INFO = ("server_info", "/api/v1/GetServerInfo", "GET")

    # Clients
    LIST_CLIENTS = ("list_clients", "/api/v1/SearchClients", "GET")
    GET_CLIENT = ("get_client", "/api/v1/GetClient/{client_id}", "GET")
    INTERROGATE_CLIENT = ("interrogate_client", "/api/v1/CollectArtifact", "POST")
    COLLECT_ARTIFACTS = ("collect_artifacts", "/api/v1/CollectArtifact", "POST")
    DELETE_CLIENT = ("delete_client", "/api/v1/DeleteClient/{client_id}", "DELETE")
    GET_CLIENT_FLOWS = ("get_client_flows", "/api/v1/GetClientFlows/{client_id}", "GET")

    # Hunts
    LIST_HUNTS = ("list_hunts", "/api/v1/ListHunts", "GET")
    GET_HUNT = ("get_hunt", "/api/v1/GetHunt/{hunt_id}", "GET")
    CREATE_HUNT = ("create_hunt", "/api/v1/CreateHunt", "POST")
    START_HUNT = ("start_hunt", "/api/v1/ModifyHunt/{hunt_id}", "POST")
    STOP_HUNT = ("stop_hunt", "/api/v1/ModifyHunt/{hunt_id}", "POST")
    ARCHIVE_HUNT = ("archive_hunt", "/api/v1/ModifyHunt/{hunt_id}", "POST")
    DELETE_HUNT = ("delete_hunt", "/api/v1/DeleteHunt/{hunt_id}", "DELETE")
    GET_HUNT_RESULTS = ("get_hunt_results", "/api/v1/GetHuntResults/{hunt_id}", "GET")

    # VQL
    EXECUTE_QUERY = ("execute_query", "/api/v1/Query", "POST")

    # VFS
    LIST_VFS_DIRECTORY = ("list_vfs_directory", "/api/v1/VFSListDirectory/{client_id}", "GET")
    DOWNLOAD_VFS_FILE = ("download_vfs_file", "/api/v1/VFSDownloadFile/{client_id}", "POST")
    GET_VFS_METADATA = ("get_vfs_metadata", "/api/v1/VFSGetBuffer/{client_id}", "GET")
    REFRESH_VFS_DIRECTORY = ("refresh_vfs_directory", "/api/v1/VFSRefreshDirectory/{client_id}", "POST")

    # Artifacts
    LIST_ARTIFACTS = ("list_artifacts", "/api/v1/GetArtifacts", "GET")
    GET_ARTIFACT = ("get_artifact", "/api/v1/GetArtifact/{name}", "GET")
    UPLOAD_ARTIFACT = ("upload_artifact", "/api/v1/SetArtifactFile", "POST")

    # Users
    LIST_USERS = ("list_users", "/api/v1/GetUsers", "GET")
    CREATE_USER = ("create_user", "/api/v1/CreateUser", "POST")
    DELETE_USER = ("delete_user", "/api/v1/DeleteUser/{username}", "DELETE")

    # Labels
    LIST_LABELS = ("list_labels", "/api/v1/GetClientLabels", "GET")
    ADD_LABEL = ("add_label", "/api/v1/LabelClients/{client_id}", "POST")
    REMOVE_LABEL = ("remove_label", "/api/v1/LabelClients/{client_id}", "POST")

    # Flows
    GET_FLOW = ("get_flow", "/api/v1/GetFlowDetails/{client_id}/{flow_id}", "GET")
    CANCEL_FLOW = ("cancel_flow", "/api/v1/CancelFlow/{client_id}/{flow_id}", "POST")
    GET_FLOW_RESULTS = ("get_flow_results", "/api/v1/GetFlowResults/{client_id}/{flow_id}", "GET")

    def __init__(self, logical_name: str, path_template: str, method: str):
        self.logical_name = logical_name
        self.path_template = path_template
        self.method = method

    @property
    def path_params(self) -> tuple[str, ...]:
        """Names of the parameters embedded in the path template."""
        return tuple(
            name for _, name, _, _ in Formatter().parse(self.path_template) if name
        )

    def resolve(self, **params: object) -> str:
        """Substitute path parameters and return the request path."""
        missing = [name for name in self.path_params if params.get(name) is None]
        if missing:
            raise InvalidURLError(
                f"Missing path parameters for {self.logical_name}: {', '.join(missing)}"
            )
        unexpected = set(params) - set(self.path_params)
        if unexpected:
            raise InvalidURLError(
                f"Unexpected path parameters for {self.logical_name}: {', '.join(sorted(unexpected))}"
            )
        return self.path_template.format(
            **{name: quote(str(value), safe="") for name, value in params.items()}
        )
