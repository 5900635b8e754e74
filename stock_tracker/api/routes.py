from fastapi import APIRouter, HTTPException, Request

from stock_tracker.errors import NoSymbolsAvailableError
from stock_tracker.schemas.client import ClientAdmission, ClientRecord

router = APIRouter()


def _tracker(request: Request):
    tracker = getattr(request.app.state, 'tracker', None)
    if tracker is None:
        raise HTTPException(status_code=503, detail='TRACKER_NOT_READY')
    return tracker


@router.post('/clients')
def register_client(client: ClientRecord, request: Request):
    _tracker(request).register_client(client)
    return client.model_dump(mode='json')


@router.post('/clients/admit')
def admit_client(req: ClientAdmission, request: Request):
    client = _tracker(request).admit_client(
        host_name=req.host_name,
        client_ip=req.client_ip,
        client_version=req.client_version,
    )
    return client.model_dump(mode='json')


@router.delete('/clients/{host_id}')
def release_client(host_id: int, request: Request):
    record = _tracker(request).release_client(host_id)
    return {
        'host_id': host_id,
        'released_symbol': record.symbol if record else None,
    }


@router.post('/clients/{host_id}/assignment')
def assign_symbol(host_id: int, request: Request):
    try:
        record = _tracker(request).assign_symbol(host_id)
    except NoSymbolsAvailableError as exc:
        raise HTTPException(status_code=409, detail='NO_SYMBOLS_AVAILABLE') from exc
    return record.model_dump(mode='json')


@router.get('/quotes/{symbol}')
def get_latest_quote(symbol: str, request: Request):
    record = _tracker(request).get_latest_quote(symbol)
    if record is None:
        raise HTTPException(status_code=404, detail='symbol not found')
    return record.model_dump(mode='json')


@router.get('/metrics')
def tracker_metrics(request: Request):
    return _tracker(request).metrics()
