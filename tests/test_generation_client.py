"""
Tests for generation_client.py using httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

from errors import ApplicationError, MalformedResponse, MissingResultField, NetworkError
from generation_client import GenerationClient
from schemas import BingoItem, City

CITY = City(id='paris', title='Paris', style_guide={'palette': 'warm'},
            items=[BingoItem(id='paris-1', text='Eiffel Tower', description='Iron lattice tower')])
ITEM = CITY.items[0]


def _client(handler) -> GenerationClient:
    http = httpx.AsyncClient(base_url='http://backend.test', transport=httpx.MockTransport(handler))
    return GenerationClient('http://backend.test', client_id='1700000000000-abcdefgh', http_client=http)


def _call(handler, method='generate_image'):
    async def go():
        client = _client(handler)
        try:
            return await getattr(client, method)(CITY, ITEM)
        finally:
            await client._http.aclose()
    return asyncio.run(go())


class TestGenerateImage:
    def test_success_and_request_shape(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen['path'] = request.url.path
            seen['body'] = json.loads(request.content)
            return httpx.Response(200, json={'success': True, 'imageUrl': 'https://img/paris-1.png'})

        assert _call(handler) == 'https://img/paris-1.png'
        assert seen['path'] == '/api/generate-image'
        assert seen['body'] == {
            'cityId': 'paris',
            'itemId': 'paris-1',
            'itemText': 'Eiffel Tower',
            'description': 'Iron lattice tower',
            'clientId': '1700000000000-abcdefgh',
            'forceNewImage': True,
            'styleGuide': {'palette': 'warm'},
        }

    def test_non_2xx_is_network_error(self) -> None:
        def handler(request):
            return httpx.Response(503, text='upstream busy')

        with pytest.raises(NetworkError) as info:
            _call(handler)
        assert info.value.status_code == 503
        assert info.value.body == 'upstream busy'

    def test_transport_error_is_network_error(self) -> None:
        def handler(request):
            raise httpx.ConnectError('refused', request=request)

        with pytest.raises(NetworkError):
            _call(handler)

    def test_non_json_is_malformed(self) -> None:
        def handler(request):
            return httpx.Response(200, text='<html>oops</html>')

        with pytest.raises(MalformedResponse):
            _call(handler)

    def test_non_object_is_malformed(self) -> None:
        def handler(request):
            return httpx.Response(200, json=['success'])

        with pytest.raises(MalformedResponse):
            _call(handler)

    def test_success_false_is_application_error(self) -> None:
        def handler(request):
            return httpx.Response(200, json={'success': False, 'error': 'content policy'})

        with pytest.raises(ApplicationError, match='content policy') as info:
            _call(handler)
        assert info.value.in_progress is False

    def test_in_progress_is_duplicate(self) -> None:
        def handler(request):
            return httpx.Response(200, json={'success': False, 'inProgress': True, 'message': 'already running'})

        with pytest.raises(ApplicationError, match='^Duplicate') as info:
            _call(handler)
        assert info.value.in_progress is True

    def test_missing_url_is_missing_field(self) -> None:
        def handler(request):
            return httpx.Response(200, json={'success': True})

        with pytest.raises(MissingResultField) as info:
            _call(handler)
        assert info.value.field == 'imageUrl'


class TestGenerateDescription:
    def test_success(self) -> None:
        def handler(request):
            assert request.url.path == '/api/generate-description'
            return httpx.Response(200, json={'success': True, 'description': 'A wrought-iron icon.'})

        assert _call(handler, 'generate_description') == 'A wrought-iron icon.'

    def test_missing_description(self) -> None:
        def handler(request):
            return httpx.Response(200, json={'success': True, 'description': ''})

        with pytest.raises(MissingResultField):
            _call(handler, 'generate_description')


class TestState:
    def test_fetch_bingo_state(self) -> None:
        def handler(request):
            return httpx.Response(200, json={
                'currentCity': 'paris',
                'cities': {'paris': {'id': 'paris', 'title': 'Paris', 'items': [
                    {'id': 'paris-1', 'text': 'Eiffel  Tower', 'isCenterSpace': True,
                     'image': '/api/placeholder-image?text=Eiffel'},
                ]}},
            })

        async def go():
            client = _client(handler)
            try:
                return await client.fetch_bingo_state()
            finally:
                await client._http.aclose()

        state = asyncio.run(go())
        item = state.cities['paris'].items[0]
        assert state.current_city == 'paris'
        assert item.text == 'Eiffel Tower'
        assert item.needs_image is True
        assert state.cities['paris'].center_item is item

    def test_update_city_metadata_never_raises(self) -> None:
        def handler(request):
            return httpx.Response(500)

        async def go():
            client = _client(handler)
            try:
                return await client.update_city_metadata('paris')
            finally:
                await client._http.aclose()

        assert asyncio.run(go()) is False
