"""Integration tests for the HTTP routes."""
import pytest
from fastapi.testclient import TestClient

from comicshelf import config, main
from comicshelf.library import get_comic, list_comics
from conftest import pdf_bytes

JSON = {"Accept": "application/json"}


@pytest.fixture
def client(data_dirs):
    main.app.state.viewers.clear()
    with TestClient(main.app) as client:
        yield client
    main.app.state.viewers.clear()


def upload(client, title="Test Comic", pages=4, **form):
    data = {"title": title, "role": "public", **form}
    files = {"file": (f"{title}.pdf", pdf_bytes([(200, 300)] * pages), "application/pdf")}
    return client.post("/upload", data=data, files=files, follow_redirects=False)


def only_comic():
    comics = list_comics()
    assert len(comics) == 1
    return comics[0]


class TestGallery:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_upload_and_list(self, client):
        response = upload(client, "Harbor Lights")

        assert response.status_code == 303
        assert "success" in response.headers["location"]
        page = client.get("/")
        assert page.status_code == 200
        assert "Harbor Lights" in page.text

        listing = client.get("/comics", params={"page": 1, "limit": 32}).json()
        assert listing[0]["title"] == "Harbor Lights"
        assert listing[0]["page_count"] == 4
        assert client.get(listing[0]["thumbnail_url"]).status_code == 200

    def test_upload_rejects_non_pdf(self, client):
        files = {"file": ("notes.txt", b"hello", "text/plain")}
        response = client.post(
            "/upload", data={"title": "Notes"}, files=files, follow_redirects=False
        )

        assert response.status_code == 303
        assert "error" in response.headers["location"]
        assert list_comics() == []

    def test_upload_with_blank_page(self, client):
        upload(client, "Padded", pages=3, blank_page="1")

        comic = only_comic()
        assert comic.has_blank_page
        assert comic.page_count == 4

    def test_search_and_unknown_role(self, client):
        upload(client, "Alpha")
        upload(client, "Beta")

        titles = [c["title"] for c in client.get("/comics", params={"q": "alp"}).json()]
        assert titles == ["Alpha"]
        assert client.get("/comics", params={"role": "owner"}).status_code == 400

    def test_update_role(self, client):
        upload(client)
        comic = only_comic()

        ok = client.post("/update-comic-role", json={"comicId": comic.id, "newRole": "member"})
        assert ok.json() == {"message": "success"}
        assert get_comic(comic.id).role == "member"

        bad = client.post("/update-comic-role", json={"comicId": comic.id, "newRole": "owner"})
        assert bad.status_code == 400
        missing = client.post("/update-comic-role", json={"comicId": 9999, "newRole": "member"})
        assert missing.status_code == 404

    def test_delete_comic_closes_viewer(self, client):
        upload(client)
        comic = only_comic()
        client.get(f"/viewer/{comic.id}")

        response = client.post("/delete-comic", json={"comicIds": [str(comic.id)]})

        assert response.json() == {"message": "success", "deleted": 1}
        assert main.app.state.viewers == {}
        assert client.get(f"/pdf/{comic.id}").status_code == 404

    def test_blank_page_route(self, client):
        upload(client, pages=3)
        comic = only_comic()

        response = client.post(
            f"/comics/{comic.id}/blank-page", data={"enabled": "1"}, follow_redirects=False
        )

        assert response.status_code == 303
        assert get_comic(comic.id).page_count == 4
        client.post(f"/comics/{comic.id}/blank-page")
        assert get_comic(comic.id).page_count == 3

    def test_pdf_asset(self, client):
        upload(client)
        comic = only_comic()

        response = client.get(f"/pdf/{comic.id}")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"

    def test_thumbnail_path_traversal(self, client):
        assert client.get("/thumbnails/..%2Fsecret.png").status_code in {400, 404}


class TestViewer:
    def open_viewer(self, client, pages=4, width=1024):
        upload(client, pages=pages)
        comic = only_comic()
        response = client.get(f"/viewer/{comic.id}", params={"width": width})
        assert response.status_code == 200
        return comic

    def test_open_renders_first_spread(self, client):
        comic = self.open_viewer(client)

        state = client.get(f"/viewer/{comic.id}/state").json()

        assert state["current_page"] == 1
        assert state["surfaces"]["right"]["page"] == 1
        assert state["surfaces"]["left"]["page"] == 2
        assert state["controls"]["prev_disabled"]
        surface = client.get(f"/viewer/{comic.id}/surface/right")
        assert surface.content.startswith(b"\x89PNG")

    def test_navigation_round_trip(self, client):
        comic = self.open_viewer(client, pages=5)

        state = client.post(f"/viewer/{comic.id}/next", headers=JSON).json()
        assert state["current_page"] == 3
        state = client.post(f"/viewer/{comic.id}/next", headers=JSON).json()
        assert state["current_page"] == 5
        assert not state["surfaces"]["left"]["visible"]
        assert client.get(f"/viewer/{comic.id}/surface/left").status_code == 404
        state = client.post(f"/viewer/{comic.id}/prev", headers=JSON).json()
        assert state["current_page"] == 3

    def test_form_posts_redirect_back(self, client):
        comic = self.open_viewer(client)

        response = client.post(f"/viewer/{comic.id}/next", follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == f"/viewer/{comic.id}"

    def test_toggle_blank_and_fullscreen(self, client):
        comic = self.open_viewer(client)

        state = client.post(f"/viewer/{comic.id}/toggle-blank", headers=JSON).json()
        assert state["show_blank_page"]
        assert state["total_page_count"] == 5
        assert state["surfaces"]["left"]["blank"]
        assert client.get(f"/viewer/{comic.id}/surface/left").status_code == 200

        state = client.post(f"/viewer/{comic.id}/fullscreen", headers=JSON).json()
        assert state["controls"]["fullscreen"]

    def test_resize_key_and_swipe(self, client):
        comic = self.open_viewer(client, pages=6)

        state = client.post(f"/viewer/{comic.id}/resize", data={"width": 500}, headers=JSON).json()
        assert state["single_page"]
        state = client.post(f"/viewer/{comic.id}/key", data={"key": "ArrowLeft"}, headers=JSON).json()
        assert state["current_page"] == 2
        state = client.post(
            f"/viewer/{comic.id}/swipe", data={"start_x": 0, "end_x": 200}, headers=JSON
        ).json()
        assert state["current_page"] == 3
        state = client.post(
            f"/viewer/{comic.id}/swipe", data={"start_x": 0, "end_x": 20}, headers=JSON
        ).json()
        assert state["current_page"] == 3

    def test_actions_need_open_viewer(self, client):
        upload(client)
        comic = only_comic()

        assert client.post(f"/viewer/{comic.id}/next").status_code == 404
        assert client.get(f"/viewer/{comic.id}/state").status_code == 404
        assert client.get("/viewer/9999").status_code == 404

    def test_close_destroys_session(self, client):
        comic = self.open_viewer(client)

        response = client.post(f"/viewer/{comic.id}/close", follow_redirects=False)

        assert response.status_code == 303
        assert main.app.state.viewers == {}

    def test_unloadable_document(self, client):
        upload(client)
        comic = only_comic()
        comic.path.unlink()

        response = client.get(f"/viewer/{comic.id}")

        assert response.status_code == 500
        assert main.app.state.viewers == {}

    def test_idle_sessions_are_evicted(self, client, monkeypatch):
        monkeypatch.setattr(config, "MAX_OPEN_VIEWERS", 2)
        upload(client)
        comic = only_comic()

        handles = []
        for _ in range(3):
            client.cookies.clear()
            assert client.get(f"/viewer/{comic.id}").status_code == 200
            handles.append(next(reversed(main.app.state.viewers.values())))

        assert len(main.app.state.viewers) == 2
        assert handles[0].controller.closed
        assert handles[0] not in main.app.state.viewers.values()
        assert not handles[2].controller.closed

    def test_recently_used_session_survives_eviction(self, client, monkeypatch):
        monkeypatch.setattr(config, "MAX_OPEN_VIEWERS", 2)
        upload(client)
        comic = only_comic()

        tokens = []
        for _ in range(2):
            client.cookies.clear()
            client.get(f"/viewer/{comic.id}")
            tokens.append(client.cookies["viewer"])
        client.cookies.clear()
        touched = client.get(f"/viewer/{comic.id}/state", headers={"Cookie": f"viewer={tokens[0]}"})
        assert touched.status_code == 200
        client.cookies.clear()
        client.get(f"/viewer/{comic.id}")

        assert tokens[0] in main.app.state.viewers
        assert tokens[1] not in main.app.state.viewers
