"""Tests for the endpoint catalog."""

import pytest

from velociraptor_console.endpoints import Endpoint
from velociraptor_console.errors import InvalidURLError


class TestEndpointResolution:
    def test_static_path(self) -> None:
        assert Endpoint.SERVER_INFO.resolve() == "/api/v1/GetServerInfo"
        assert Endpoint.SERVER_INFO.method == "GET"

    def test_substitutes_parameters(self) -> None:
        path = Endpoint.GET_FLOW.resolve(client_id="C.1234", flow_id="F.ABC")
        assert path == "/api/v1/GetFlowDetails/C.1234/F.ABC"

    def test_percent_encodes_parameters(self) -> None:
        path = Endpoint.GET_ARTIFACT.resolve(name="Windows/Sys Info")
        assert path == "/api/v1/GetArtifact/Windows%2FSys%20Info"

    def test_missing_parameter(self) -> None:
        with pytest.raises(InvalidURLError, match="client_id"):
            Endpoint.GET_CLIENT.resolve()

    def test_unexpected_parameter(self) -> None:
        with pytest.raises(InvalidURLError, match="hunt_id"):
            Endpoint.LIST_CLIENTS.resolve(hunt_id="H.1")

    def test_path_params(self) -> None:
        assert Endpoint.CANCEL_FLOW.path_params == ("client_id", "flow_id")
        assert Endpoint.LIST_HUNTS.path_params == ()

    @pytest.mark.parametrize("endpoint", list(Endpoint))
    def test_catalog_is_well_formed(self, endpoint: Endpoint) -> None:
        assert endpoint.path_template.startswith("/api/v1/")
        assert endpoint.method in {"GET", "POST", "DELETE"}
        assert endpoint.logical_name == endpoint.name.lower()
