"""Portal URLs, CSS selectors, portal text markers and notification policy values."""

# ── URLs ─────────────────────────────────────────────────────────────────────

PORTAL_DOMAIN = "progress.upatras.gr"
PORTAL_BASE = f"https://{PORTAL_DOMAIN}"
PORTAL_HOME_URL = f"{PORTAL_BASE}/irj/portal"
ACADEMIC_IVIEW_URL = (
    f"{PORTAL_BASE}/irj/servlet/prt/portal/prtroot/"
    "com.sap.portal.pagebuilder.IviewModeProxy"
    "?iview_id=pcd%3Aportal_content%2Fcom.ups.UPS%2Fcom.ups.UPS_ROLES"
    "%2Fcom.ups.UPS%29STUDENT_ROLE%2Fcom.ups.ups_student_ws%2FPIQ_ST_ACAD_WORK_OV"
    "&iview_mode=default&sapDocumentRenderingMode=EmulateIE8"
)

# Frames hosting the captcha and the grades grid
GRADES_FRAME_MARKERS = ["zups_piq_st_acad_work_ov", "sap/bc/webdynpro"]
GRADES_FRAME_PREFIX = "https://matrix.upatras.gr/sap/bc/webdynpro/SAP/ZUPS_PIQ_ST_ACAD_WORK_OV"

# ── CSS Selectors ────────────────────────────────────────────────────────────

SELECTORS = {
    # Login page
    "login_username": "#inputEmail",
    "login_username_alt": '#username, input[name="j_username"], input[name="username"]',
    "login_password": "#inputPassword",
    "login_button": "#loginButton",
    "login_error": ".form-element.form-error",
    "login_link": 'a[href*="login"], a[href*="Login"], div[title="Είσοδος"]',

    # Captcha frame
    "captcha_image": 'img[src*="zups_piq_st_acad_work_ov"], img[id*="captcha"], img[src*="captcha"]',
    "captcha_image_fallback": "img",
    "captcha_refresh": 'div[title="Ανανέωση"], img[src*="TbRefresh.gif"]',
    "captcha_input": 'input[type="text"], input.lsField__input, input.urEdf2TxtL',
    "captcha_submit": 'div.lsButton[ct="B"]',
    "captcha_submit_candidates": 'div.lsButton, [ct="B"], a, span, button',

    # Grades content
    "grades_content": ".urST, .urLinStd, table, tr",
    "grades_table": 'table[id*="GRADES"]',
    "table_like": "table, .urST, iframe",
}

SUBMIT_BUTTON_TEXTS = ["ΕΠΟΜΕΝΟ", "NEXT", "Next"]

# ── Portal Signals ───────────────────────────────────────────────────────────

VERIFY_SUCCESS_SELECTORS = ['img[src*="SuccessMessage"]', 'img[src*="WD_M_OK"]']
VERIFY_SUCCESS_TEXTS = ["OK!", "ΟΚ!"]
VERIFY_ERROR_SELECTORS = ['img[src*="ErrorMessage"]', 'img[src*="WD_M_ERROR"]']
VERIFY_ERROR_TEXTS = ["ERROR!", "Λάθος"]

LOGIN_IDP_HOST = "idp.upnet.gr"
LOGIN_UNKNOWN_USER_MARKER = "Άγνωστο"
LOGIN_WRONG_PASSWORD_MARKER = "Λανθασμένος"
SESSION_COOKIE_NAMES = ["MYSAPSSO2", "saplb"]

# ── Notifications ────────────────────────────────────────────────────────────

ALLOWED_CHECK_INTERVALS = (10, 30, 60, 360, 720, 1440)
DEFAULT_CHECK_INTERVAL = 30

NOTIFICATION_ICON = "/pwa-192x192.png"

# ── Browser ──────────────────────────────────────────────────────────────────

VIEWPORT = {"width": 1920, "height": 1080}