import httpx

from polymath.research import ResearchClient


WIKI = {
    "title": "Thermodynamics",
    "extract": "Thermodynamics deals with heat, work and temperature.",
    "content_urls": {"desktop": {"page": "https://en.wikipedia.org/wiki/Thermodynamics"}},
}
OPENALEX = {"results": [
    {
        "display_name": "On the Motive Power of Heat",
        "publication_year": 1824,
        "primary_location": {"landing_page_url": "https://example.org/carnot"},
        "authorships": [{"author": {"display_name": "Sadi Carnot"}}, {"author": {}}],
    },
    {"display_name": None, "primary_location": None},
]}


def make_client(handler):
    return ResearchClient(client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_lookup_combines_sources():
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.host == "en.wikipedia.org":
            return httpx.Response(200, json=WIKI)
        return httpx.Response(200, json=OPENALEX)

    result = make_client(handler).lookup("Thermodynamics")
    assert [s.title for s in result.sources] == ["Thermodynamics", "On the Motive Power of Heat", "Thermodynamics"]
    assert result.sources[0].url == "https://en.wikipedia.org/wiki/Thermodynamics"
    assert result.sources[1].authors == ["Sadi Carnot"]
    assert result.sources[1].year == 1824
    assert result.sources[2].url == "https://openalex.org"
    assert result.notes == "Sources retrieved from Wikipedia and OpenAlex."
    openalex = requests[1]
    assert openalex.url.params["search"] == "Thermodynamics"
    assert openalex.url.params["per-page"] == "3"


def test_topic_is_path_encoded():
    seen = []

    def handler(request):
        seen.append(request.url.raw_path.decode())
        return httpx.Response(404)

    make_client(handler).lookup("heat/work")
    assert seen[0] == "/api/rest_v1/page/summary/heat%2Fwork"


def test_failures_leave_empty_result():
    def handler(request):
        if request.url.host == "en.wikipedia.org":
            return httpx.Response(500)
        raise httpx.ConnectError("offline", request=request)

    result = make_client(handler)("Thermodynamics")
    assert result.sources == []
    assert result.notes == "No sources found. Consider a broader query."


def test_summary_without_extract_is_skipped():
    def handler(request):
        if request.url.host == "en.wikipedia.org":
            return httpx.Response(200, json={"title": "Thermodynamics"})
        return httpx.Response(200, text="not json")

    assert make_client(handler).lookup("Thermodynamics").sources == []


def test_result_is_serialisable():
    result = make_client(lambda request: httpx.Response(200, json=WIKI)).lookup("Thermodynamics")
    data = result.to_dict()
    assert data["topic"] == "Thermodynamics"
    assert data["sources"][0]["summary"].startswith("Thermodynamics deals")
