from db import count_mappings, get_mapping
from services.reconciliation import ReconciliationMapper, extract_mappings


def _period(*records):
    return "<Envelope><Body><getResultadoResponse>" + "".join(records) + "</getResultadoResponse></Body></Envelope>"


def test_local_then_remote_with_year():
    xml = _period(
        "<Pedido><CodPedLab>5001</CodPedLab><CodPedApoio>900001</CodPedApoio>"
        "<AnoCodPedApoio>2025</AnoCodPedApoio></Pedido>"
    )
    [m] = extract_mappings(xml)
    assert (m.local_order_code, m.remote_order_code, m.order_year) == ("5001", "900001", 2025)


def test_remote_then_local_and_cd_ped_lab_alias():
    xml = _period(
        "<Pedido><CodPedApoio>900002</CodPedApoio><AnoCodPedApoio>2024</AnoCodPedApoio>"
        "<CD_PED_LAB> 5002 </CD_PED_LAB></Pedido>"
    )
    [m] = extract_mappings(xml)
    assert (m.local_order_code, m.remote_order_code, m.order_year) == ("5002", "900002", 2024)


def test_mixed_orders_do_not_cross_records():
    xml = _period(
        "<Pedido><CodPedLab>1</CodPedLab><CodPedApoio>A</CodPedApoio></Pedido>",
        "<Pedido><CodPedApoio>B</CodPedApoio><CodPedLab>2</CodPedLab></Pedido>",
        "<Pedido><CodPedLab>3</CodPedLab><CodPedApoio>C</CodPedApoio></Pedido>",
    )
    pairs = {m.local_order_code: m.remote_order_code for m in extract_mappings(xml)}
    assert pairs == {"1": "A", "2": "B", "3": "C"}


def test_non_numeric_year_becomes_none_and_values_unescaped():
    xml = _period("<CodPedLab>7&amp;1</CodPedLab><CodPedApoio>X</CodPedApoio><AnoCodPedApoio>n/a</AnoCodPedApoio>")
    [m] = extract_mappings(xml)
    assert m.local_order_code == "7&1"
    assert m.order_year is None


def test_last_entry_wins(state_db):
    xml = _period(
        "<Pedido><CodPedLab>42</CodPedLab><CodPedApoio>OLD</CodPedApoio></Pedido>",
        "<Pedido><CodPedLab>42</CodPedLab><CodPedApoio>NEW</CodPedApoio></Pedido>",
    )
    mapper = ReconciliationMapper(state_db)
    assert mapper.refresh(xml) == 1
    assert mapper.lookup("42").remote_order_code == "NEW"


def test_refresh_updates_existing_rows(state_db):
    mapper = ReconciliationMapper(state_db)
    mapper.refresh(_period("<CodPedLab>1</CodPedLab><CodPedApoio>A</CodPedApoio>"))
    mapper.refresh(_period("<CodPedLab>1</CodPedLab><CodPedApoio>B</CodPedApoio>"
                           "<AnoCodPedApoio>2023</AnoCodPedApoio>"))

    assert count_mappings(state_db) == 1
    m = get_mapping(state_db, "1")
    assert m.remote_order_code == "B" and m.order_year == 2023


def test_fault_and_blank_return_zero(state_db):
    mapper = ReconciliationMapper(state_db)
    fault = "<Envelope><Body><Fault><faultstring>Sessao expirada</faultstring></Fault>" \
            "<CodPedLab>1</CodPedLab><CodPedApoio>A</CodPedApoio></Body></Envelope>"
    assert mapper.refresh(fault) == 0
    assert mapper.refresh("") == 0
    assert mapper.refresh(None) == 0
    assert count_mappings(state_db) == 0


def test_unpaired_codes_are_ignored(state_db):
    xml = _period("<CodPedLab>1</CodPedLab><CodPedLab>2</CodPedLab><CodPedApoio>B</CodPedApoio>",
                  "<CodPedApoio>orphan</CodPedApoio>")
    assert {m.local_order_code: m.remote_order_code for m in extract_mappings(xml)} == {"2": "B"}


def test_lookup_trims_and_misses(state_db):
    mapper = ReconciliationMapper(state_db)
    mapper.refresh(_period("<CodPedLab>9</CodPedLab><CodPedApoio>Z</CodPedApoio>"))
    assert mapper.lookup("  9 ").remote_order_code == "Z"
    assert mapper.lookup("10") is None
    assert mapper.lookup("") is None
