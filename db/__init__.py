from .db import (
    get_engine,
    init_engine,
    get_session,
    create_all,
    dispose_engine,
    get_assessment,
    find_assessment_by_phone,
    upsert_queue_items,
    fetch_due_queue_items,
    claim_queue_item,
    suppress_queue_item,
    mark_queue_item_failed,
    get_queue_item,
    list_queue_days,
    has_red_flag_alert,
    is_phone_opted_out,
    record_sms_opt_out,
    get_template,
    get_diagnosis_insert,
    list_encouragements,
    upsert_response,
    save_note,
    get_response,
    list_response_days,
    list_scored_sms_days,
    insert_alert,
    list_alerts,
)  # noqa: F401
